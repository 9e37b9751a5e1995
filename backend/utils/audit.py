from models import AuditLog, AuditAction
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Fields whose value differs between before and after, as {field: {from, to}}."""
    if not before or not after:
        return {}
    changed = {}
    for key in set(before.keys()) | set(after.keys()):
        if before.get(key) != after.get(key):
            changed[key] = {"from": before.get(key), "to": after.get(key)}
    return changed

async def create_audit_log(
    db,
    action: AuditAction,
    account_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry. Best effort: returns "" instead of raising.

    Args:
        db: Motor database handle
        action: The audit action type
        account_id: ID of the affected account
        metadata: Additional metadata
        before_state / after_state: if both given, their diff is stored under metadata["diff"]
    """
    try:
        enriched_metadata = dict(metadata) if metadata else {}
        diff = calculate_diff(before_state, after_state)
        if diff:
            enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            account_id=account_id,
            metadata=enriched_metadata or None,
        )
        doc = audit_log.model_dump()
        doc["action"] = audit_log.action.value

        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}" + (f" for {account_id}" if account_id else ""))
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

async def get_audit_logs_for_account(
    db,
    account_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Get audit logs for one account, newest first."""
    try:
        cursor = db.audit_logs.find(
            {"account_id": account_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for account: {e}")
        return []
