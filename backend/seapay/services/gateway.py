"""
Razorpay 网关客户端

文档: https://razorpay.com/docs/webhooks/validate-test/
      https://razorpay.com/docs/api/payments/

客户端由调用方显式构造并注入（见 seapay.api.deps.get_gateway_client），
不使用全局单例。
"""

import hashlib
import hmac
import logging
from typing import Any

import httpx

from seapay.services.errors import GatewayError

logger = logging.getLogger(__name__)


class RazorpayClient:
    """Razorpay 网关封装：webhook 签名校验 + 支付查询"""

    def __init__(
        self,
        *,
        webhook_secret: str,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            webhook_secret: Webhook HMAC 共享密钥
            key_id / key_secret: REST API 凭证（只在查询支付时需要）
            base_url: API 地址
            timeout: 请求超时（秒）
            transport: 自定义 httpx transport（测试用）
        """
        self.webhook_secret = webhook_secret
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            auth=(self.key_id or "", self.key_secret or ""),
            transport=self._transport,
        )

    @property
    def has_api_credentials(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def compute_signature(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        """
        验证 Webhook 签名

        签名是用共享密钥对原始请求体做的 HMAC-SHA256（十六进制）。
        未配置密钥或缺少签名头时一律视为失败。

        Args:
            payload: 请求体原始字节
            signature: 签名头部值

        Returns:
            是否验证通过
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured, rejecting webhook")
            return False
        if not signature:
            return False
        expected = self.compute_signature(payload)
        return hmac.compare_digest(signature.strip(), expected)

    def fetch_payment(self, payment_id: str) -> dict[str, Any] | None:
        """
        查询网关侧的支付详情（用于运营对账时核对）

        Returns:
            支付详情；未配置凭证或请求失败时返回 None
        """
        if not self.has_api_credentials:
            return None
        try:
            with self._client() as client:
                response = client.get(f"/payments/{payment_id}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch payment {payment_id}: {e}")
            return None

        if response.status_code == 200:
            return response.json()
        logger.error(f"Fetch payment error: {response.status_code} {response.text}")
        return None

    def create_order(
        self,
        *,
        amount: int,
        receipt: str,
        notes: dict[str, str],
        currency: str = "INR",
    ) -> dict[str, Any] | None:
        """
        创建网关订单（自动捕获）

        notes 会原样出现在该订单所有支付的 webhook 里，
        结账时把关联令牌和计划 ID 写在这里。

        Args:
            amount: 金额（最小货币单位）
            receipt: 商户侧收据号（最长 40 字符）
            notes: 订单备注
            currency: 货币

        Returns:
            网关返回的订单；未配置 API 凭证时返回 None

        Raises:
            GatewayError: 网络错误或网关返回非 2xx
        """
        if not self.has_api_credentials:
            return None
        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt[:40],
            "payment_capture": 1,
            "notes": notes,
        }
        try:
            with self._client() as client:
                response = client.post("/orders", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Failed to create order {receipt}: {e}")
            raise GatewayError(f"create order failed: {e}") from e

        if response.status_code >= 300:
            logger.error(f"Create order error: {response.status_code} {response.text}")
            raise GatewayError("create order rejected", status_code=response.status_code)
        order = response.json()
        logger.info(f"Razorpay order created: {order.get('id')} receipt={receipt}")
        return order
