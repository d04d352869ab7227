"""认证方式注册表

将认证方式类型映射到提供者实例。进程启动时注册完毕，之后只读，并发读取无需加锁。

使用示例:
    registry = MethodRegistry().register(TOTPProvider(issuer="MyApp"))

    provider = registry.get_provider(MethodType.TOTP)
    registry.is_supported("sms")  # False
"""

from typing import Dict, Iterable, List, Union

from ytwofactor.exceptions import MethodNotSupportedException
from ytwofactor.log import get_logger
from .base import MethodType, TwoFactorProvider

logger = get_logger()


def coerce_method_type(method_type: Union[MethodType, str]) -> MethodType:
    try:
        return MethodType(method_type)
    except ValueError:
        raise MethodNotSupportedException(
            f"Unknown two-factor method type: {method_type}",
            method_type=str(method_type),
        ) from None


class MethodRegistry:
    """认证方式注册表"""

    def __init__(self):
        self._providers: Dict[MethodType, TwoFactorProvider] = {}

    def register(self, provider: TwoFactorProvider) -> "MethodRegistry":
        """注册提供者

        Returns:
            self: 支持链式调用
        """
        if not isinstance(provider, TwoFactorProvider):
            raise TypeError(f"{type(provider).__name__} does not implement TwoFactorProvider")
        method_type = MethodType(provider.method_type)
        if method_type in self._providers:
            logger.warning(f"Two-factor provider for {method_type.value} replaced")
        self._providers[method_type] = provider
        logger.info(f"Two-factor provider registered: {method_type.value}")
        return self

    def get_provider(self, method_type: Union[MethodType, str]) -> TwoFactorProvider:
        """获取提供者

        Raises:
            MethodNotSupportedException: 类型未知或未注册
        """
        method_type = coerce_method_type(method_type)
        provider = self._providers.get(method_type)
        if provider is None:
            raise MethodNotSupportedException(
                f"Two-factor method {method_type.value} is not supported",
                method_type=method_type.value,
            )
        return provider

    def is_supported(self, method_type: Union[MethodType, str]) -> bool:
        try:
            return MethodType(method_type) in self._providers
        except ValueError:
            return False

    def list_supported(self) -> List[MethodType]:
        return list(self._providers.keys())

    def get_registry_stats(self) -> Dict[str, object]:
        return {
            "total_providers": len(self._providers),
            "supported_types": [t.value for t in self._providers],
        }

    def validate_required_methods(self, method_types: Iterable[Union[MethodType, str]]) -> List[str]:
        """返回不受支持的类型列表，全部支持时为空列表"""
        return [str(getattr(t, "value", t)) for t in method_types if not self.is_supported(t)]
