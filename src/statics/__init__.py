from importlib.metadata import version

from .accept_encoding import AcceptEncoding, parse_accept_encoding
from .file_server import Config, Resource, build_routing_table, file_server

__all__ = [
    "AcceptEncoding",
    "Config",
    "Resource",
    "__version__",
    "build_routing_table",
    "file_server",
    "parse_accept_encoding",
]

__version__ = version("statics")
