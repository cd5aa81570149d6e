__version__ = "0.1.0"

from .config import ChatmemConfig, load_config
from .system import MemorySystem

__all__ = ["ChatmemConfig", "MemorySystem", "__version__", "load_config"]
