"""Transport layer for patchfeed.

- http: synchronous httpx client bound to the update feed's base URI
- pipeline: streaming decrypt -> gunzip -> hash+write codec (and its inverse)
"""

from patchfeed.transport.http import UpdateTransport, normalize_base_uri
from patchfeed.transport.pipeline import decode_stream, encode_bytes, encode_stream

__all__ = [
    "UpdateTransport",
    "decode_stream",
    "encode_bytes",
    "encode_stream",
    "normalize_base_uri",
]
