"""备用码提供者

提供一次性备用码，用于用户无法使用主要认证方式时的恢复登录。

- 每个码为 4 个随机字节的十六进制大写，格式 XXXX-XXXX
- 明文只在生成时返回一次，持久化的是密文
- 验证与消费在同一次调用中完成：匹配后立即删除该码，并发请求中只有一个能删除成功
- 重新生成会作废全部旧码

使用示例:
    provider = BackupCodesProvider(BackupCodeStore(db), cipher, code_count=10)

    batch = provider.generate(user_id="u1")
    print(batch.codes)  # ['3F2A-91BC', ...]

    result = provider.verify(user_id="u1", candidate="3f2a-91bc")
    result.is_valid         # True
    result.remaining_count  # 9
"""

import hmac
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from ytwofactor.log import get_logger
from ytwofactor.store import BackupCodeStore
from ytwofactor.utils.encryption import SecretCipher

logger = get_logger()


def generate_backup_code() -> str:
    """生成单个备用码（格式：XXXX-XXXX）"""
    raw = secrets.token_hex(4).upper()
    return f"{raw[:4]}-{raw[4:]}"


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _codes_equal(candidate: str, stored: str) -> bool:
    """常量时间比较；码长固定且公开，长度不等直接返回 False"""
    a = candidate.encode("utf-8")
    b = stored.encode("utf-8")
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


@dataclass
class BackupCodeBatch:
    """新生成的备用码（明文，仅展示一次）"""
    codes: List[str]
    instructions: List[str] = field(default_factory=list)


@dataclass
class BackupCodeVerification:
    """备用码验证结果"""
    is_valid: bool
    remaining_count: int


class BackupCodesProvider:
    """备用码提供者

    Args:
        store: 备用码密文存储
        cipher: 加解密器
        code_count: 默认生成数量
    """

    INSTRUCTIONS = [
        "Each backup code can only be used once",
        "Store these codes in a safe place such as a password manager",
        "Do not share your backup codes with anyone",
        "Generate new codes if you believe they have been compromised",
    ]

    def __init__(self, store: BackupCodeStore, cipher: SecretCipher, code_count: int = 10):
        self.store = store
        self.cipher = cipher
        self.code_count = code_count

    def generate_codes(self, count: Optional[int] = None) -> List[str]:
        """生成不重复的明文备用码（不持久化）"""
        count = count or self.code_count
        codes: List[str] = []
        while len(codes) < count:
            code = generate_backup_code()
            if code not in codes:
                codes.append(code)
        return codes

    def generate(self, user_id: str, count: Optional[int] = None) -> BackupCodeBatch:
        """生成并持久化备用码，作废该用户全部旧码"""
        codes = self.generate_codes(count)
        self.store.replace_all(user_id, [self.cipher.encrypt(code) for code in codes])
        logger.info(f"Backup codes generated: user={user_id}, count={len(codes)}")
        return BackupCodeBatch(codes=codes, instructions=list(self.INSTRUCTIONS))

    def verify(self, user_id: str, candidate: str) -> BackupCodeVerification:
        """验证并消费备用码

        候选码规范化（去空白、转大写）后与每个已存储码做常量时间比较，
        命中后在同一次调用中删除该码。

        Returns:
            BackupCodeVerification: 是否有效及剩余数量
        """
        normalized = normalize_code(candidate or "")
        stored = self.store.list_for_user(user_id)
        if not normalized or not stored:
            return BackupCodeVerification(is_valid=False, remaining_count=len(stored))

        matched_id = None
        for code_id, ciphertext in stored:
            plain = normalize_code(self.cipher.decrypt(ciphertext, legacy_base64=True).value)
            # 遍历全部码，不因命中提前结束
            if _codes_equal(normalized, plain) and matched_id is None:
                matched_id = code_id

        if matched_id is None:
            return BackupCodeVerification(is_valid=False, remaining_count=len(stored))

        if not self.store.consume(matched_id):
            # 并发请求已消费该码
            logger.warning(f"Backup code already consumed concurrently: user={user_id}")
            return BackupCodeVerification(is_valid=False, remaining_count=self.store.count_for_user(user_id))

        remaining = self.store.count_for_user(user_id)
        logger.info(f"Backup code used: user={user_id}, remaining={remaining}")
        if remaining == 0:
            logger.warning(f"User {user_id} has no backup codes left")
        return BackupCodeVerification(is_valid=True, remaining_count=remaining)

    def remaining_count(self, user_id: str) -> int:
        return self.store.count_for_user(user_id)

    def has_codes(self, user_id: str) -> bool:
        return self.remaining_count(user_id) > 0

    def clear(self, user_id: str) -> int:
        """删除用户全部备用码"""
        return self.store.delete_all(user_id)
