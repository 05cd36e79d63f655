"""
运营对账路由模块

只对 is_admin 用户开放：
- 查询任意用户的订阅状态
- 孤儿事件 / 死信事件列表
- 关联预览、人工关联、解除关联、死信重试
"""
from __future__ import annotations

from fastapi import APIRouter, Query
from sqlmodel import Session

from seapay import crud
from seapay.api.deps import CatalogDep, GatewayDep, NotifierDep, OperatorUser, SessionDep
from seapay.api.errors import event_not_found, user_not_found
from seapay.api.routes.subscription import status_data
from seapay.api.schemas import (
    ApiEnvelope,
    LinkPreviewData,
    LinkRequest,
    PaymentEventPublic,
    PaymentEventsData,
    ReconcileResultData,
    SubscriptionApplicationPublic,
)
from seapay.enums import DispatchOutcome, PaymentEventState
from seapay.models import PaymentEvent, User
from seapay.services import reconciliation

router = APIRouter(prefix="/admin", tags=["admin"])


def _public(event: PaymentEvent) -> PaymentEventPublic:
    return PaymentEventPublic.model_validate(event, from_attributes=True)


def _result(session: Session, event_id: str, outcome: DispatchOutcome | None) -> ReconcileResultData:
    event = crud.get_event(session=session, event_id=event_id)
    if event is None:
        raise event_not_found()
    return ReconcileResultData(
        event_id=event.id,
        outcome=outcome,
        state=event.state,
        linked_user_id=event.linked_user_id,
    )


@router.get("/users/{user_id}/subscription", response_model=ApiEnvelope)
def user_subscription(session: SessionDep, _: OperatorUser, user_id: int) -> ApiEnvelope:
    if session.get(User, user_id) is None:
        raise user_not_found()
    view = crud.get_status(session=session, user_id=user_id)
    return ApiEnvelope(data=status_data(view))


@router.get("/payments/orphaned", response_model=ApiEnvelope)
def orphaned_payments(
    session: SessionDep,
    _: OperatorUser,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
) -> ApiEnvelope:
    """
    孤儿事件列表（按接收时间升序）

    请求路径: GET /api/v1/admin/payments/orphaned?page=1&page_size=50
    """
    events = crud.list_orphaned_events(
        session=session, limit=page_size, offset=(page - 1) * page_size
    )
    items = [_public(e) for e in events]
    return ApiEnvelope(data=PaymentEventsData(data=items, count=len(items)))


@router.get("/payments/dead-letter", response_model=ApiEnvelope)
def dead_letter_payments(
    session: SessionDep,
    _: OperatorUser,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
) -> ApiEnvelope:
    events = crud.list_by_state(
        session=session,
        state=PaymentEventState.dead_letter,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    items = [_public(e) for e in events]
    return ApiEnvelope(data=PaymentEventsData(data=items, count=len(items)))


@router.get("/payments/{event_id}/link-preview", response_model=ApiEnvelope)
def link_preview(
    session: SessionDep,
    _: OperatorUser,
    gateway: GatewayDep,
    event_id: str,
    user_id: int = Query(),
) -> ApiEnvelope:
    """
    关联前预览

    返回候选用户的当前订阅状态、已关联到该用户的支付和订阅应用记录，
    运营确认无误后再调用 link。

    请求路径: GET /api/v1/admin/payments/{event_id}/link-preview?user_id=
    """
    preview = reconciliation.preview_link(
        session, event_id=event_id, user_id=user_id, gateway=gateway
    )
    return ApiEnvelope(
        data=LinkPreviewData(
            event=_public(preview.event),
            user_id=preview.user_id,
            status=status_data(preview.status),
            linked_events=[_public(e) for e in preview.linked_events],
            applications=[
                SubscriptionApplicationPublic.model_validate(a, from_attributes=True)
                for a in preview.applications
            ],
            gateway_payment=preview.gateway_payment,
        )
    )


@router.post("/payments/{event_id}/link", response_model=ApiEnvelope)
def link_payment(
    session: SessionDep,
    _: OperatorUser,
    catalog: CatalogDep,
    notifier: NotifierDep,
    event_id: str,
    body: LinkRequest,
) -> ApiEnvelope:
    outcome = reconciliation.link_orphaned_event(
        session,
        event_id=event_id,
        user_id=body.user_id,
        confirm=body.confirm,
        catalog=catalog,
        notifier=notifier,
    )
    return ApiEnvelope(data=_result(session, event_id, outcome))


@router.post("/payments/{event_id}/unlink", response_model=ApiEnvelope)
def unlink_payment(session: SessionDep, _: OperatorUser, event_id: str) -> ApiEnvelope:
    reconciliation.unlink_event(session, event_id=event_id)
    return ApiEnvelope(data=_result(session, event_id, None))


@router.post("/payments/{event_id}/retry", response_model=ApiEnvelope)
def retry_payment(
    session: SessionDep,
    _: OperatorUser,
    catalog: CatalogDep,
    notifier: NotifierDep,
    event_id: str,
) -> ApiEnvelope:
    outcome = reconciliation.retry_dead_letter(
        session, event_id=event_id, catalog=catalog, notifier=notifier
    )
    return ApiEnvelope(data=_result(session, event_id, outcome))
