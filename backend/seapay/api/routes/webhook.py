"""
支付网关 Webhook 路由

请求路径: POST /api/v1/payments/webhook

验签必须基于原始请求体，所以这里直接读取 Request.body()，
不让 FastAPI 先解析 JSON。数据库操作放到线程池里执行。
"""
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from seapay.api.deps import CatalogDep, GatewayDep, NotifierDep, SessionDep
from seapay.api.errors import signature_invalid
from seapay.api.schemas import ApiEnvelope, WebhookAckData
from seapay.core.config import settings
from seapay.enums import DispatchOutcome
from seapay.services.errors import SignatureInvalid
from seapay.services.receiver import receive_webhook

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", response_model=ApiEnvelope)
async def payment_webhook(
    request: Request,
    session: SessionDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    notifier: NotifierDep,
) -> ApiEnvelope:
    raw_body = await request.body()
    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)

    try:
        result = await run_in_threadpool(
            receive_webhook,
            session,
            raw_body=raw_body,
            signature=signature,
            gateway=gateway,
            delivery_id=request.headers.get(settings.WEBHOOK_EVENT_ID_HEADER),
            catalog=catalog,
            notifier=notifier,
        )
    except SignatureInvalid:
        raise signature_invalid()

    return ApiEnvelope(
        data=WebhookAckData(
            duplicate=result.outcome == DispatchOutcome.duplicate,
            event_id=result.event_id,
            outcome=result.outcome,
        )
    )
