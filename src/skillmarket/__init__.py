from ._version import __version__
from .client import MarketplaceClient
from .errors import (
    AuthError,
    HTTPStatusError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    SkillmarketError,
    StorageError,
    VerificationError,
)

__all__ = [
    "__version__",
    "AuthError",
    "HTTPStatusError",
    "MarketplaceClient",
    "NetworkError",
    "NotFoundError",
    "RateLimitError",
    "SkillmarketError",
    "StorageError",
    "VerificationError",
]
