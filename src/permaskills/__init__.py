from ._version import __version__
from .errors import SkillsError
from .install import InstallService
from .publish import PublishService
from .registry import RegistryClient
from .resolver import resolve
from .transport import BundleTransport

__all__ = [
    "__version__",
    "BundleTransport",
    "InstallService",
    "PublishService",
    "RegistryClient",
    "SkillsError",
    "resolve",
]
