"""CRUD 操作模块"""
from .ledger import (
    get_event,
    link_event,
    list_by_state,
    list_events_for_user,
    list_orphaned_events,
    list_orphans_for_rescan,
    list_unapplied_events,
    mark_dead_letter,
    mark_orphaned,
    mark_processed,
    record_attempt,
    record_event,
    record_unparseable,
    reopen_event,
    requeue_event,
)
from .subscription import (
    SubscriptionStatusView,
    cas_update,
    consume_credit,
    ensure_pending,
    expire_lapsed,
    get_application,
    get_record,
    get_status,
    list_applications,
    premium_is_effective,
)
from .user import add_contact, attach_order, issue_checkout_token
from .user import create as create_user

__all__ = [
    "get_event",
    "link_event",
    "list_by_state",
    "list_events_for_user",
    "list_orphaned_events",
    "list_orphans_for_rescan",
    "list_unapplied_events",
    "mark_dead_letter",
    "mark_orphaned",
    "mark_processed",
    "record_attempt",
    "record_event",
    "record_unparseable",
    "reopen_event",
    "requeue_event",
    "SubscriptionStatusView",
    "cas_update",
    "consume_credit",
    "ensure_pending",
    "expire_lapsed",
    "get_application",
    "get_record",
    "get_status",
    "list_applications",
    "premium_is_effective",
    "add_contact",
    "attach_order",
    "issue_checkout_token",
    "create_user",
]
