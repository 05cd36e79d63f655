"""
自定义异常模块

所有业务异常都继承自 AppError，在 main.py 中有统一的异常处理器，
渲染为 {"code", "message", "data"} 的统一响应格式。
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    - code: 业务错误码（用于前端/运营后台区分不同错误）
    - message: 错误消息
    - status_code: HTTP 状态码

    使用示例：
        raise AppError(code=404301, message="Payment event not found", status_code=404)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def signature_invalid() -> AppError:
    """Webhook 签名错误：对网关唯一的拒绝响应"""
    return AppError(code=401001, message="Invalid webhook signature", status_code=401)


def insufficient_credits() -> AppError:
    # 402 would be accurate, but many clients treat it specially.
    return AppError(code=402001, message="Insufficient credits", status_code=400)


def event_not_found() -> AppError:
    return AppError(code=404301, message="Payment event not found", status_code=404)


def user_not_found() -> AppError:
    return AppError(code=404001, message="User not found", status_code=404)


def gateway_unavailable() -> AppError:
    return AppError(code=502401, message="Payment gateway unavailable, retry later", status_code=502)
