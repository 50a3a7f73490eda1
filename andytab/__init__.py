"""AndyTab - WebDAV sync core for the AndyTab new-tab extension."""

from andytab.version import get_version

__version__ = get_version()

__all__ = ["__version__"]
