"""密钥加密工具

使用 AES-256-CBC 对静态存储的小段敏感数据（TOTP 密钥、备用码）进行加解密。

密文格式: ``hex(iv) + ":" + hex(ciphertext)``，每次加密使用随机 16 字节 IV。

解密对历史数据宽容：
- 不含 ``:`` 的值视为加密上线前写入的旧数据（明文或 base64）
- 格式损坏的 ``iv:ct`` 记录 warning 并原样返回

使用示例:
    cipher = SecretCipher(settings.two_factor.encryption_key)

    token = cipher.encrypt("JBSWY3DPEHPK3PXP")
    result = cipher.decrypt(token)
    result.value              # "JBSWY3DPEHPK3PXP"
    result.was_legacy_format  # False
"""

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ytwofactor.log import get_logger

logger = get_logger()

IV_LENGTH = 16
KEY_LENGTH = 32
SEPARATOR = ":"


@dataclass(frozen=True)
class DecodeResult:
    """解密结果

    Attributes:
        value: 解密后的明文（旧格式或损坏数据时为尽力解码的值）
        was_legacy_format: 是否走了旧格式 / 容错分支
    """
    value: str
    was_legacy_format: bool


def derive_key(key_material: str) -> bytes:
    """将配置的密钥转换为 32 字节 AES 密钥

    不足 32 字节时用字符 "0" 补齐，超出部分截断。补齐是弱化的兜底方案，只适用于非生产环境。
    """
    raw = key_material.encode("utf-8")
    if len(raw) < KEY_LENGTH:
        logger.warning(
            f"Encryption key is shorter than {KEY_LENGTH} bytes and will be padded; "
            "do not use this configuration in production"
        )
        raw = raw.ljust(KEY_LENGTH, b"0")
    return raw[:KEY_LENGTH]


class SecretCipher:
    """AES-256-CBC 加解密器

    Args:
        key: 配置的密钥字符串
    """

    def __init__(self, key: str):
        if not key:
            raise ValueError("Encryption key must not be empty")
        self._key = derive_key(key)

    def encrypt(self, plaintext: str) -> str:
        """加密明文，返回 ``hex(iv):hex(ct)``"""
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}{SEPARATOR}{ciphertext.hex()}"

    def decrypt(self, ciphertext: str, legacy_base64: bool = False) -> DecodeResult:
        """解密

        Args:
            ciphertext: 待解密的值
            legacy_base64: 旧格式数据是否为 base64 编码（备用码的旧存储格式）

        Returns:
            DecodeResult
        """
        if SEPARATOR not in ciphertext:
            return self._decode_legacy(ciphertext, legacy_base64)

        iv_hex, body_hex = ciphertext.split(SEPARATOR, 1)
        try:
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
            if len(iv) != IV_LENGTH:
                raise ValueError(f"IV must be {IV_LENGTH} bytes, got {len(iv)}")

            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()

            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return DecodeResult(plaintext.decode("utf-8"), was_legacy_format=False)
        except ValueError as e:
            # 包含 UnicodeDecodeError 和 padding 校验失败
            logger.warning(f"Failed to decrypt value, returning it unchanged: {e}")
            return DecodeResult(ciphertext, was_legacy_format=True)

    def _decode_legacy(self, value: str, legacy_base64: bool) -> DecodeResult:
        if not legacy_base64:
            return DecodeResult(value, was_legacy_format=True)
        try:
            decoded = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, ValueError):
            logger.warning("Legacy value is not valid base64, returning it unchanged")
            return DecodeResult(value, was_legacy_format=True)
        return DecodeResult(decoded, was_legacy_format=True)
