"""备用码提供者测试

测试备用码生成、规范化比较、一次性消费和旧格式兼容
"""

import base64
import re

from ytwofactor.mfa.backup_codes import (
    BackupCodesProvider,
    generate_backup_code,
    normalize_code,
)


CODE_PATTERN = re.compile(r"[0-9A-F]{4}-[0-9A-F]{4}")


class TestBackupCodeFormat:
    """备用码格式测试"""

    def test_code_format(self):
        for _ in range(20):
            assert CODE_PATTERN.fullmatch(generate_backup_code())

    def test_normalize(self):
        assert normalize_code("  ab12-cd34 \n") == "AB12-CD34"

    def test_generate_codes_unique(self, backup_codes):
        codes = backup_codes.generate_codes(50)

        assert len(codes) == 50
        assert len(set(codes)) == 50


class TestBackupCodeGenerate:
    """备用码生成测试"""

    def test_generate_default_count(self, backup_codes):
        """测试默认生成 10 个并全部持久化"""
        batch = backup_codes.generate("user-1")

        assert len(batch.codes) == 10
        assert all(CODE_PATTERN.fullmatch(code) for code in batch.codes)
        assert len(batch.instructions) == 4
        assert backup_codes.remaining_count("user-1") == 10
        assert backup_codes.has_codes("user-1") is True

    def test_stored_codes_are_encrypted(self, backup_codes, backup_code_store):
        """测试数据库中只保存密文"""
        batch = backup_codes.generate("user-1")

        stored = [ciphertext for _, ciphertext in backup_code_store.list_for_user("user-1")]

        assert len(stored) == 10
        for ciphertext in stored:
            assert ":" in ciphertext
            assert ciphertext not in batch.codes

    def test_regenerate_invalidates_old_codes(self, backup_codes):
        """测试重新生成后旧码全部失效"""
        old = backup_codes.generate("user-1").codes
        new = backup_codes.generate("user-1", count=5).codes

        assert backup_codes.remaining_count("user-1") == 5
        assert backup_codes.verify("user-1", old[0]).is_valid is (old[0] in new)
        assert backup_codes.verify("user-1", new[0]).is_valid is True


class TestBackupCodeVerify:
    """备用码验证测试"""

    def test_code_is_single_use(self, backup_codes):
        """测试同一个码第一次有效，第二次无效"""
        codes = backup_codes.generate("user-1").codes

        first = backup_codes.verify("user-1", codes[0])
        second = backup_codes.verify("user-1", codes[0])

        assert (first.is_valid, first.remaining_count) == (True, 9)
        assert (second.is_valid, second.remaining_count) == (False, 9)

    def test_lowercase_and_whitespace_accepted(self, backup_codes):
        codes = backup_codes.generate("user-1").codes

        result = backup_codes.verify("user-1", f"  {codes[1].lower()} ")

        assert result.is_valid is True
        assert result.remaining_count == 9

    def test_wrong_code(self, backup_codes):
        codes = backup_codes.generate("user-1").codes
        wrong = "0000-0000"
        while wrong in codes:
            wrong = generate_backup_code()

        result = backup_codes.verify("user-1", wrong)

        assert result.is_valid is False
        assert result.remaining_count == 10

    def test_empty_candidate(self, backup_codes):
        backup_codes.generate("user-1")

        assert backup_codes.verify("user-1", "").is_valid is False
        assert backup_codes.verify("user-1", None).is_valid is False

    def test_user_without_codes(self, backup_codes):
        result = backup_codes.verify("nobody", "ABCD-1234")

        assert result.is_valid is False
        assert result.remaining_count == 0

    def test_codes_isolated_per_user(self, backup_codes):
        """测试其他用户的备用码不能使用"""
        codes = backup_codes.generate("user-1").codes
        backup_codes.generate("user-2")

        assert backup_codes.verify("user-2", codes[0]).is_valid is False
        assert backup_codes.remaining_count("user-1") == 10

    def test_exhaustion(self, backup_codes):
        """测试用完所有备用码"""
        codes = backup_codes.generate("user-1", count=2).codes

        backup_codes.verify("user-1", codes[0])
        last = backup_codes.verify("user-1", codes[1])

        assert last.is_valid is True
        assert last.remaining_count == 0
        assert backup_codes.has_codes("user-1") is False

    def test_legacy_base64_code(self, backup_codes, backup_code_store):
        """测试加密上线前以 base64 保存的旧备用码仍可使用"""
        legacy = base64.b64encode(b"ABCD-1234").decode("ascii")
        backup_code_store.replace_all("user-1", [legacy])

        result = backup_codes.verify("user-1", "abcd-1234")

        assert result.is_valid is True
        assert result.remaining_count == 0

    def test_concurrently_consumed_code_rejected(self, backup_code_store, cipher):
        """测试匹配后删除失败（已被并发请求消费）时判定无效"""

        class RacingStore:
            def __init__(self, inner):
                self.inner = inner

            def list_for_user(self, user_id):
                rows = self.inner.list_for_user(user_id)
                # 模拟另一个请求在读取之后抢先消费
                for code_id, _ in rows:
                    self.inner.consume(code_id)
                return rows

            def consume(self, code_id):
                return self.inner.consume(code_id)

            def count_for_user(self, user_id):
                return self.inner.count_for_user(user_id)

        provider = BackupCodesProvider(backup_code_store, cipher)
        codes = provider.generate("user-1", count=1).codes

        racing = BackupCodesProvider(RacingStore(backup_code_store), cipher)
        result = racing.verify("user-1", codes[0])

        assert result.is_valid is False
        assert result.remaining_count == 0

    def test_clear(self, backup_codes):
        backup_codes.generate("user-1")

        assert backup_codes.clear("user-1") == 10
        assert backup_codes.remaining_count("user-1") == 0
