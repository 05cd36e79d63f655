"""订阅记录 CRUD 操作"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlmodel import Session, select
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random

from seapay.api.errors import AppError, insufficient_credits
from seapay.core.config import settings
from seapay.enums import SubscriptionStatus, Tier
from seapay.models import SubscriptionApplication, SubscriptionRecord, ensure_utc, utc_now
from seapay.services.errors import ConcurrentUpdateConflict


@dataclass(frozen=True)
class SubscriptionStatusView:
    """对外只读视图：tier 为 premium / super_user / free"""
    user_id: int
    tier: str
    period_end: datetime | None
    credits_remaining: int
    premium_status: SubscriptionStatus | None


def get_record(*, session: Session, user_id: int, tier: Tier) -> SubscriptionRecord | None:
    stmt = select(SubscriptionRecord).where(
        SubscriptionRecord.user_id == user_id, SubscriptionRecord.tier == tier
    )
    return session.exec(stmt).first()


def cas_update(
    *, session: Session, record: SubscriptionRecord, values: dict[str, Any], now: datetime
) -> bool:
    """
    乐观锁更新：只有 version 未变时才写入，并把 version + 1

    不提交事务；返回 False 表示有并发写入者，调用方应回滚后重试。
    """
    stmt = (
        update(SubscriptionRecord)
        .where(SubscriptionRecord.id == record.id)
        .where(SubscriptionRecord.version == record.version)
        .values(**values, version=record.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1


def get_application(*, session: Session, payment_event_id: str) -> SubscriptionApplication | None:
    stmt = select(SubscriptionApplication).where(
        SubscriptionApplication.payment_event_id == payment_event_id
    )
    return session.exec(stmt).first()


def list_applications(*, session: Session, user_id: int) -> list[SubscriptionApplication]:
    stmt = (
        select(SubscriptionApplication)
        .where(SubscriptionApplication.user_id == user_id)
        .order_by(SubscriptionApplication.applied_at.desc())  # type: ignore[attr-defined]
    )
    return list(session.exec(stmt).all())


def premium_is_effective(record: SubscriptionRecord | None, now: datetime) -> bool:
    if record is None or record.status not in (SubscriptionStatus.active, SubscriptionStatus.cancelled):
        return False
    period_end = ensure_utc(record.period_end)
    return period_end is not None and period_end > now


def get_status(*, session: Session, user_id: int, now: datetime | None = None) -> SubscriptionStatusView:
    """GetSubscriptionStatus：高级会员优先，其次积分账户，否则免费"""
    now = now or utc_now()
    premium = get_record(session=session, user_id=user_id, tier=Tier.premium)
    credits = get_record(session=session, user_id=user_id, tier=Tier.super_user)
    credits_remaining = credits.credits_remaining if credits else 0

    if premium_is_effective(premium, now):
        tier = Tier.premium.value
    elif credits_remaining > 0:
        tier = Tier.super_user.value
    else:
        tier = "free"

    return SubscriptionStatusView(
        user_id=user_id,
        tier=tier,
        period_end=ensure_utc(premium.period_end) if premium else None,
        credits_remaining=credits_remaining,
        premium_status=premium.status if premium else None,
    )


def consume_credit(*, session: Session, user_id: int, amount: int = 1) -> int:
    """扣减积分（每个问题一个额度），返回剩余额度"""
    retrying = Retrying(
        stop=stop_after_attempt(settings.APPLY_MAX_ATTEMPTS),
        wait=wait_random(0, 0.05),
        retry=retry_if_exception_type(ConcurrentUpdateConflict),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            session.expire_all()
            record = get_record(session=session, user_id=user_id, tier=Tier.super_user)
            if record is None or record.credits_remaining < amount:
                raise insufficient_credits()
            remaining = record.credits_remaining - amount
            if not cas_update(
                session=session,
                record=record,
                values={"credits_remaining": remaining},
                now=utc_now(),
            ):
                session.rollback()
                raise ConcurrentUpdateConflict(user_id, Tier.super_user.value)
            session.commit()
    return remaining


def expire_lapsed(*, session: Session, now: datetime | None = None) -> int:
    """把已过期的高级会员（含退款宽限期结束的）标记为 expired"""
    now = now or utc_now()
    stmt = (
        update(SubscriptionRecord)
        .where(SubscriptionRecord.tier == Tier.premium)
        .where(
            SubscriptionRecord.status.in_(  # type: ignore[attr-defined]
                [SubscriptionStatus.active, SubscriptionStatus.cancelled]
            )
        )
        .where(SubscriptionRecord.period_end.is_not(None))  # type: ignore[union-attr]
        .where(SubscriptionRecord.period_end <= now)
        .values(
            status=SubscriptionStatus.expired,
            version=SubscriptionRecord.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.commit()
    return result.rowcount or 0


def ensure_pending(*, session: Session, user_id: int, now: datetime | None = None) -> SubscriptionRecord:
    """
    结账时进入 pending：没有记录或记录已失效的用户进入待激活状态，
    仍在有效期内的用户保持不变
    """
    now = now or utc_now()
    record = get_record(session=session, user_id=user_id, tier=Tier.premium)
    if record is None:
        record = SubscriptionRecord(
            user_id=user_id, tier=Tier.premium, status=SubscriptionStatus.pending
        )
        session.add(record)
        session.commit()
        session.refresh(record)
        return record
    if premium_is_effective(record, now) or record.status == SubscriptionStatus.pending:
        return record
    if not cas_update(
        session=session, record=record, values={"status": SubscriptionStatus.pending}, now=now
    ):
        session.rollback()
        raise AppError(code=409101, message="Subscription changed concurrently, retry", status_code=409)
    session.commit()
    session.refresh(record)
    return record
