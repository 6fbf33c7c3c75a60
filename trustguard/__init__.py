"""Trust database, update pipe, path filtering and file fingerprinting for allow-listing."""

__version__ = "0.1.0"

__all__ = [
    "database",
    "escape",
    "fdlines",
    "fileinfo",
    "lru",
    "message",
    "pathfilter",
    "trustlist",
    "updater",
]