"""TOTP (Time-based One-Time Password) 提供者

实现 RFC 6238 基于时间的一次性密码，兼容 Google Authenticator、Microsoft Authenticator 等。

提供者本身无状态：setup 返回明文密钥由调用方加密持久化，verify 由调用方传入解密后的密钥。

使用示例:
    provider = TOTPProvider(issuer="MyApp")

    setup_data = provider.setup(user_id="u1", email="john@example.com")
    print(setup_data.secret)   # 32 位 Base32 字符串
    print(setup_data.uri)      # otpauth://totp/MyApp:john%40example.com?secret=...
    print(setup_data.qr_code)  # data:image/png;base64,...

    result = provider.verify(user_id="u1", code="123456", secret=setup_data.secret)
"""

import base64
import hashlib
import hmac
import io
import secrets
import struct
import time
from typing import List
from urllib.parse import quote

import qrcode

from .base import MethodType, SetupData, VerifyResult


def _generate_secret(num_bytes: int = 20) -> str:
    """生成随机密钥（Base32，去除填充）"""
    random_bytes = secrets.token_bytes(num_bytes)
    return base64.b32encode(random_bytes).decode("utf-8").rstrip("=")


def _hotp(secret: str, counter: int, digits: int = 6) -> str:
    """HOTP (HMAC-based One-Time Password)

    Args:
        secret: Base32 编码的密钥
        counter: 计数器
        digits: 密码位数

    Returns:
        str: 一次性密码
    """
    key = base64.b32decode(secret.upper() + "=" * (-len(secret) % 8))

    counter_bytes = struct.pack(">Q", counter)
    hmac_hash = hmac.new(key, counter_bytes, hashlib.sha1).digest()

    # 动态截断
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack(">I", hmac_hash[offset:offset + 4])[0]
    truncated &= 0x7FFFFFFF

    otp = truncated % (10 ** digits)
    return str(otp).zfill(digits)


def _totp(secret: str, period: int = 30, digits: int = 6, timestamp: int = None) -> str:
    if timestamp is None:
        timestamp = int(time.time())
    return _hotp(secret, timestamp // period, digits)


def _verify_totp(
    secret: str,
    code: str,
    period: int = 30,
    digits: int = 6,
    window: int = 1,
    timestamp: int = None,
) -> bool:
    """在 ±window 个时间步内验证 TOTP

    所有候选步都会计算并比较，不因提前命中而提前返回不同耗时的分支。
    """
    if timestamp is None:
        timestamp = int(time.time())

    matched = False
    for offset in range(-window, window + 1):
        expected = _totp(secret, period, digits, timestamp + offset * period)
        if hmac.compare_digest(code.encode("utf-8"), expected.encode("utf-8")):
            matched = True
    return matched


def render_qr_data_url(data: str) -> str:
    """将文本渲染为 PNG 二维码并编码为 data URL"""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    image = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


class TOTPProvider:
    """TOTP 提供者

    Args:
        issuer: 发行者名称（显示在 Authenticator 中）
        digits: OTP 位数
        period: 时间步长（秒）
        window: 验证时允许的时间窗口（前后步数）
        secret_bytes: 密钥随机字节数，至少 20（160 位）
    """

    ALGORITHM = "SHA1"

    def __init__(
        self,
        issuer: str = "MultiTenant Platform",
        digits: int = 6,
        period: int = 30,
        window: int = 1,
        secret_bytes: int = 20,
    ):
        if secret_bytes < 20:
            raise ValueError("TOTP secret must carry at least 160 bits of entropy")
        self.issuer = issuer
        self.digits = digits
        self.period = period
        self.window = window
        self.secret_bytes = secret_bytes

    @property
    def method_type(self) -> MethodType:
        return MethodType.TOTP

    def setup(self, user_id: str, email: str = None, **kwargs) -> SetupData:
        """生成新的 TOTP 密钥及二维码

        Args:
            user_id: 用户 ID
            email: 邮箱（优先作为账户标签）

        Returns:
            SetupData: 包含明文密钥、URI、二维码和设置说明
        """
        secret = _generate_secret(self.secret_bytes)
        account = email or str(user_id)
        uri = self.build_uri(secret, account)

        return SetupData(
            method_type=MethodType.TOTP,
            secret=secret,
            uri=uri,
            qr_code=render_qr_data_url(uri),
            instructions=self.get_instructions(),
            extra={
                "issuer": self.issuer,
                "algorithm": self.ALGORITHM,
                "digits": self.digits,
                "period": self.period,
            },
        )

    def build_uri(self, secret: str, account: str) -> str:
        """构建 otpauth URI

        otpauth://totp/Issuer:account?secret=xxx&issuer=Issuer&algorithm=SHA1&digits=6&period=30
        """
        label = f"{self.issuer}:{account}"
        params = {
            "secret": secret,
            "issuer": self.issuer,
            "algorithm": self.ALGORITHM,
            "digits": str(self.digits),
            "period": str(self.period),
        }
        param_str = "&".join(f"{k}={quote(v)}" for k, v in params.items())
        return f"otpauth://totp/{quote(label)}?{param_str}"

    def get_instructions(self) -> List[str]:
        return [
            "Install an authenticator app such as Google Authenticator, Authy or Microsoft Authenticator",
            "Scan the QR code with the app, or enter the secret manually",
            f"Enter the {self.digits}-digit code shown in the app to confirm the setup",
            "Save your backup codes in a safe place",
            f"The app generates a new code every {self.period} seconds",
        ]

    def verify(self, user_id: str, code: str, secret: str, timestamp: int = None, **kwargs) -> VerifyResult:
        """验证 TOTP 代码

        失败时只返回通用提示，不区分格式错误、时间偏移或代码错误。
        """
        if not secret or not code:
            return VerifyResult.fail()

        code = code.replace(" ", "").replace("-", "")
        if len(code) != self.digits or not code.isdigit():
            return VerifyResult.fail()

        try:
            matched = _verify_totp(
                secret=secret,
                code=code,
                period=self.period,
                digits=self.digits,
                window=self.window,
                timestamp=timestamp,
            )
        except (ValueError, TypeError):
            # 密钥不是合法 Base32（例如解密失败后原样返回的数据）
            return VerifyResult.fail()

        if matched:
            return VerifyResult.ok("TOTP verification successful")
        return VerifyResult.fail()

    def generate_code(self, secret: str, timestamp: int = None) -> str:
        """生成指定时间的 TOTP 代码"""
        return _totp(secret, self.period, self.digits, timestamp)

    def get_remaining_seconds(self, timestamp: int = None) -> int:
        """当前代码剩余有效秒数"""
        if timestamp is None:
            timestamp = int(time.time())
        return self.period - (timestamp % self.period)
