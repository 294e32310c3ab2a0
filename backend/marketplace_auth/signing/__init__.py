"""Platform request signing."""

from marketplace_auth.signing.engine import (
    ShopeeScope,
    SignatureEngine,
    SigningContext,
)
from marketplace_auth.signing.signer import (
    RequestSigner,
    SignedRequest,
    is_timestamp_fresh,
)

__all__ = [
    "ShopeeScope",
    "SignatureEngine",
    "SigningContext",
    "RequestSigner",
    "SignedRequest",
    "is_timestamp_fresh",
]
