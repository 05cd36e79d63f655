"""
订阅路由模块

- 查询订阅状态
- 结账（签发关联令牌并创建网关订单）
- 消耗积分
- 查询支付记录
"""
from __future__ import annotations

from fastapi import APIRouter

from seapay import crud
from seapay.api.deps import CatalogDep, CurrentUser, GatewayDep, SessionDep
from seapay.api.errors import AppError, gateway_unavailable
from seapay.api.schemas import (
    ApiEnvelope,
    CheckoutData,
    CheckoutRequest,
    ConsumeCreditsRequest,
    CreditsData,
    PaymentEventPublic,
    PaymentEventsData,
    SubscriptionStatusData,
)
from seapay.enums import Tier
from seapay.services.errors import ConcurrentUpdateConflict, GatewayError

router = APIRouter(prefix="/subscription", tags=["subscription"])


def status_data(view: crud.SubscriptionStatusView) -> SubscriptionStatusData:
    return SubscriptionStatusData(
        user_id=view.user_id,
        tier=view.tier,
        period_end=view.period_end,
        credits_remaining=view.credits_remaining,
        premium_status=view.premium_status,
    )


@router.get("/status", response_model=ApiEnvelope)
def status(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    view = crud.get_status(session=session, user_id=current_user.id)
    return ApiEnvelope(data=status_data(view))


@router.post("/checkout", response_model=ApiEnvelope)
def checkout(
    session: SessionDep,
    current_user: CurrentUser,
    catalog: CatalogDep,
    gateway: GatewayDep,
    body: CheckoutRequest,
) -> ApiEnvelope:
    """
    发起结账

    签发关联令牌，并用它创建网关订单（notes 中带 correlation_token 和 plan_id），
    webhook 回来时用它精确匹配用户。未配置网关凭证时只返回令牌。
    购买高级会员时，没有有效会员的用户进入 pending。

    请求路径: POST /api/v1/subscription/checkout

    Returns:
        ApiEnvelope: 关联令牌和计划金额
    """
    plan = catalog.get(body.plan_id)
    if plan is None:
        raise AppError(code=404401, message="Plan not found", status_code=404)

    token = crud.issue_checkout_token(session=session, user_id=current_user.id, plan_id=plan.plan_id)
    try:
        order = gateway.create_order(
            amount=plan.amount_minor_units,
            receipt=token.token,
            notes={"correlation_token": token.token, "plan_id": plan.plan_id},
        )
    except GatewayError:
        raise gateway_unavailable()
    if order is not None:
        token = crud.attach_order(session=session, token=token, order_id=order["id"])

    if plan.tier == Tier.premium:
        crud.ensure_pending(session=session, user_id=current_user.id)

    return ApiEnvelope(
        data=CheckoutData(
            correlation_token=token.token,
            plan_id=plan.plan_id,
            amount_minor_units=plan.amount_minor_units,
            order_id=token.order_id,
            key_id=gateway.key_id if token.order_id else None,
        )
    )


@router.post("/credits/consume", response_model=ApiEnvelope)
def consume_credits(
    session: SessionDep,
    current_user: CurrentUser,
    body: ConsumeCreditsRequest | None = None,
) -> ApiEnvelope:
    """每个问题消耗一个积分，积分不足返回 402001"""
    amount = body.amount if body else 1
    try:
        remaining = crud.consume_credit(session=session, user_id=current_user.id, amount=amount)
    except ConcurrentUpdateConflict:
        raise AppError(code=409101, message="Subscription changed concurrently, retry", status_code=409)
    return ApiEnvelope(data=CreditsData(credits_remaining=remaining))


@router.get("/payments", response_model=ApiEnvelope)
def payments(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    events = crud.list_events_for_user(session=session, user_id=current_user.id)
    items = [PaymentEventPublic.model_validate(e, from_attributes=True) for e in events]
    return ApiEnvelope(data=PaymentEventsData(data=items, count=len(items)))
