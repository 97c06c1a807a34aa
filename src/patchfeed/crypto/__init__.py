"""patchfeed cryptographic layer.

- keys: RSA key generation, PEM serialization and loading; AES material
- signing: SHA-512 hashing and RSA signatures over digests
- trust: TrustContext, the immutable verification key + payload key bundle
"""

from patchfeed.crypto import keys
from patchfeed.crypto import signing
from patchfeed.crypto import trust
from patchfeed.crypto.trust import BlobTransform, TrustContext

__all__ = [
    "keys",
    "signing",
    "trust",
    "BlobTransform",
    "TrustContext",
]
