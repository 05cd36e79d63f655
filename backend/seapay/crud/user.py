"""用户目录 CRUD 操作"""
import secrets

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from seapay.api.errors import AppError
from seapay.enums import ContactKind
from seapay.models import CheckoutToken, User, UserContact
from seapay.services.matcher import normalize_email, normalize_phone


def create(
    *,
    session: Session,
    full_name: str | None = None,
    emails: list[str] | None = None,
    phones: list[str] | None = None,
    is_admin: bool = False,
) -> User:
    """创建用户并登记联系方式"""
    user = User(full_name=full_name, is_admin=is_admin)
    session.add(user)
    session.commit()
    session.refresh(user)
    for email in emails or []:
        add_contact(session=session, user_id=user.id, kind=ContactKind.email, value=email)
    for phone in phones or []:
        add_contact(session=session, user_id=user.id, kind=ContactKind.phone, value=phone)
    return user


def add_contact(*, session: Session, user_id: int, kind: ContactKind, value: str) -> UserContact | None:
    """登记联系方式（保存规范化后的值），重复登记直接返回已有记录"""
    normalized = normalize_email(value) if kind == ContactKind.email else normalize_phone(value)
    if not normalized:
        raise AppError(code=400101, message=f"Invalid {kind.value}", status_code=400)

    existing = session.exec(
        select(UserContact)
        .where(UserContact.user_id == user_id)
        .where(UserContact.kind == kind)
        .where(UserContact.value == normalized)
    ).first()
    if existing:
        return existing

    contact = UserContact(user_id=user_id, kind=kind, value=normalized)
    session.add(contact)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return None
    session.refresh(contact)
    return contact


def issue_checkout_token(*, session: Session, user_id: int, plan_id: str) -> CheckoutToken:
    """签发结账关联令牌（写入网关订单元数据，回调时用于匹配用户）"""
    token = CheckoutToken(token=f"ck_{secrets.token_urlsafe(18)}", user_id=user_id, plan_id=plan_id)
    session.add(token)
    session.commit()
    session.refresh(token)
    return token


def attach_order(*, session: Session, token: CheckoutToken, order_id: str) -> CheckoutToken:
    token.order_id = order_id
    session.add(token)
    session.commit()
    session.refresh(token)
    return token
