"""工具模块"""

from .encryption import DecodeResult, SecretCipher, derive_key

__all__ = [
    "DecodeResult",
    "SecretCipher",
    "derive_key",
]
