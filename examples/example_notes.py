"""Example: auditing a notes service end to end."""

import tempfile
from datetime import datetime, timedelta, timezone

from auditlog import create_audit_logger
from auditlog.audit.context import create_audit_context
from auditlog.common.logging import get_logger

logger = get_logger(__name__)


def example_notes_flow(db_path: str):
    """
    Example scenario: a user works on notes.

    1. User logs in
    2. Creates and edits a note
    3. Is denied access to an admin resource
    4. Deletes the note
    5. Audit trail is queried
    """
    audit = create_audit_logger(
        "sqlite",
        config={"batch_size": 10, "metadata": {"service": "notes-api"}},
        database=db_path,
    )

    context = create_audit_context(
        headers={"user-agent": "example/1.0", "x-forwarded-for": "203.0.113.7"},
        method="POST",
        url="https://notes.example.com/api/notes",
    )

    user = audit.for_actor("user_42")
    notes = audit.for_resource("note")

    user.login(context=context)
    notes.create("note_1", new_values={"title": "Groceries"}, actor_id="user_42")
    notes.update(
        "note_1",
        old_values={"title": "Groceries"},
        new_values={"title": "Groceries (weekly)"},
        actor_id="user_42",
    )
    user.access_denied("admin_panel", reason="missing role")
    notes.delete("note_1", old_values={"title": "Groceries (weekly)"}, actor_id="user_42")
    audit.flush()

    page = audit.query(actor_id="user_42", sort_order="ASC")
    for event in page.items:
        logger.info(f"{event.timestamp.isoformat()} {event.level.value:>8} {event.description}")

    now = datetime.now(timezone.utc)
    stats = audit.get_stats(now - timedelta(hours=1), now + timedelta(minutes=1))
    logger.info(f"{stats.total_events} events, success rate {stats.success_rate}%")

    audit.shutdown()
    return page


if __name__ == "__main__":
    workdir = tempfile.mkdtemp(prefix="audit_example_")
    result = example_notes_flow(f"{workdir}/audit.db")
    print(f"Events recorded: {result.total}")
