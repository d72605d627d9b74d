import logging

from pymongo.errors import PyMongoError

from .utils import now_iso

logger = logging.getLogger(__name__)

AUDIT_PATH = "audit_log"


def write_audit_log(
    store,
    user=None,
    module=None,
    action=None,
    reference=None,
    before=None,
    after=None,
    extra=None
):
    log = {
        "timestamp": now_iso(),
        "user": str(user or "").strip() or "admin",
        "module": module,
        "action": action,
        "reference": reference,
        "before": before,
        "after": after
    }

    if extra:
        log.update(extra)

    try:
        return store.push(AUDIT_PATH, log)
    except PyMongoError as exc:
        logger.warning("Audit log write failed for %s/%s: %s", module, action, exc)
        return None


def load_audit_log(store, limit=200):
    rows = store.query(AUDIT_PATH, order_by="timestamp")
    rows.reverse()
    return rows[: max(1, limit)]
