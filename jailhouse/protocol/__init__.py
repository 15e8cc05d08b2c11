"""Wire protocol shared by the trusted side and the sandbox."""

from jailhouse.protocol.codec import (
    Message,
    MessageDecoder,
    MessageTag,
    decode_dispatch,
    encode,
    encode_dispatch,
)


__all__ = [
    "Message",
    "MessageDecoder",
    "MessageTag",
    "decode_dispatch",
    "encode",
    "encode_dispatch",
]
