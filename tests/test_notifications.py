"""
Tests for the notification outbox and the email notifier.

Covers:
    - outbox rows written with the transition, dispatched after commit
    - actor exclusion, ProcessCompleted always reaching the starter
    - notifier failure leaves the row failed and never fails the transition
    - NOTIFICATIONS_ENABLED=false keeps rows pending
    - retry_failed, including rows stuck in ``sending``
    - one dispatcher per row: the pending to sending claim
    - EmailService rendering (escaping, rejection comment) and EmailLog audit
    - EmailNotifier raises on SMTP failure and skips recipients already emailed
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from bpm.core.exceptions import ExternalServiceError
from bpm.models import db
from bpm.models.instance import TASK_APPROVED
from bpm.models.notification import (
    EVENT_PROCESS_COMPLETED,
    EVENT_TASK_ASSIGNED,
    EVENT_TASK_REJECTED,
    OUTBOX_FAILED,
    OUTBOX_PENDING,
    OUTBOX_SENDING,
    OUTBOX_SENT,
    EmailLog,
)
from bpm.services import instance_service, task_service
from bpm.services.email_service import EmailNotifier, EmailService
from bpm.services.notification import NotificationService


@pytest.fixture()
def instance(org, make_template):
    template = make_template(
        [{"name": "Check", "approver_position_ids": [org["accountant"].id]}],
        departments=[org["department"]],
    )
    return instance_service.start_process_instance(org["alice"], template.id, "Laptop <new>")


class TestOutbox:
    def test_rows_marked_sent_after_dispatch(self, instance):
        rows = NotificationService.list_for_instance(instance.id)
        assert [r.event_kind for r in rows] == [EVENT_TASK_ASSIGNED]
        assert rows[0].status == OUTBOX_SENT
        assert rows[0].dispatched_at is not None

    def test_process_completed_reaches_starter_who_approved(self, org, instance, notifier):
        task = instance.task_assignments[0]
        task_service.approve_task(org["alice"], task.id)

        completed = notifier.events(EVENT_PROCESS_COMPLETED)
        assert len(completed) == 1
        assert completed[0]["recipient_ids"] == [org["alice"].id]

    def test_record_without_recipients_writes_nothing(self, org, instance):
        row = NotificationService.record(
            event_kind=EVENT_TASK_ASSIGNED,
            instance=instance,
            actor=org["alice"],
            recipient_ids=[org["alice"].id],
        )
        assert row is None

    def test_unknown_event_kind(self, instance):
        with pytest.raises(ValueError):
            NotificationService.record(event_kind="task_exploded", instance=instance, recipient_ids=["x"])

    def test_notifier_failure_does_not_fail_transition(self, org, instance, notifier):
        notifier.fail = True
        task = instance.task_assignments[0]

        result = task_service.approve_task(org["bob"], task.id)

        assert result.status == TASK_APPROVED
        failed = NotificationService.list_for_instance(instance.id, status=OUTBOX_FAILED)
        assert failed
        assert all("smtp down" in r.error_message for r in failed)

    def test_retry_failed(self, org, instance, notifier):
        notifier.fail = True
        task_service.reject_task(org["bob"], instance.task_assignments[0].id, "no")
        notifier.fail = False

        result = NotificationService.retry_failed()

        assert result["failed"] == 0
        assert result["sent"] >= 1
        assert NotificationService.list_for_instance(instance.id, status=OUTBOX_FAILED) == []

    def test_disabled_notifications_stay_pending(self, app, org, instance, notifier):
        app.config["NOTIFICATIONS_ENABLED"] = False
        try:
            notifier.sent.clear()
            task_service.reject_task(org["bob"], instance.task_assignments[0].id, "no")
        finally:
            app.config["NOTIFICATIONS_ENABLED"] = True

        assert notifier.sent == []
        pending = NotificationService.list_for_instance(instance.id, status=OUTBOX_PENDING)
        assert [r.event_kind for r in pending] == [EVENT_TASK_REJECTED]
        assert pending[0].recipient_ids == [org["alice"].id]


class TestEmailRendering:
    def test_render_escapes_body_but_not_subject(self):
        subject, html = EmailService.render(EVENT_TASK_ASSIGNED, {
            "recipient_name": "Bob",
            "process_name": "Laptop <new>",
            "task_name": "Check",
            "link": "http://bpm.test/process-instances/1",
        })
        assert subject == "[BPM] Task assigned: Check – Laptop <new>"
        assert "Laptop &lt;new&gt;" in html
        assert "http://bpm.test/process-instances/1" in html

    def test_rejection_includes_comment(self):
        _, html = EmailService.render(EVENT_TASK_REJECTED, {
            "recipient_name": "Alice",
            "process_name": "Laptop",
            "task_name": "Check",
            "actor_name": "Bob",
            "comment": "too <b>expensive</b>",
            "link": "x",
        })
        assert "<strong>Comment:</strong> too &lt;b&gt;expensive&lt;/b&gt;" in html

    def test_rejection_without_comment_has_no_comment_item(self):
        _, html = EmailService.render(EVENT_TASK_REJECTED, {"process_name": "P", "task_name": "T"})
        assert "Comment:" not in html

    def test_unknown_template(self):
        assert EmailService.render("nope", {}) is None


class TestEmailNotifier:
    def test_dev_mode_logs_emails(self, org, instance):
        row = NotificationService.list_for_instance(instance.id)[0]

        logs = EmailNotifier().send([org["bob"], org["alice"]], row)

        assert [log.recipient_email for log in logs] == [org["bob"].email, org["alice"].email]
        assert all(log.status == "sent" for log in logs)
        assert all(log.template_name == EVENT_TASK_ASSIGNED for log in logs)
        assert logs[0].outbox_id == row.id

    def test_inactive_users_skipped(self, org, instance, make_user):
        ghost = make_user("Ghost", is_active=False)
        row = NotificationService.list_for_instance(instance.id)[0]

        logs = EmailNotifier().send([ghost], row)
        assert logs == []

    def test_dispatch_through_email_notifier(self, org, instance):
        task_service.reject_task(org["bob"], instance.task_assignments[0].id, "no")
        for row in NotificationService.list_for_instance(instance.id):
            row.status = OUTBOX_PENDING
        db.session.commit()
        result = NotificationService.dispatch_pending(notifier=EmailNotifier())

        assert result == {"sent": 2, "failed": 0, "pending": 0}
        subjects = sorted(log.subject for log in EmailLog.query.all())
        assert subjects == [
            "[BPM] Task assigned: Check – Laptop <new>",
            "[BPM] Task rejected: Check – Laptop <new>",
        ]

    def test_smtp_failure_raises_and_is_logged(self, app, org, instance):
        row = NotificationService.list_for_instance(instance.id)[0]
        app.config["MAIL_SERVER"] = "smtp.bpm.test"
        try:
            with patch("bpm.services.email_service.smtplib.SMTP", side_effect=OSError("refused")):
                with pytest.raises(ExternalServiceError, match="1 of 1 emails failed: refused"):
                    EmailNotifier().send([org["bob"]], row)
        finally:
            app.config["MAIL_SERVER"] = None

        logs = EmailLog.query.filter_by(outbox_id=row.id).all()
        assert [log.status for log in logs] == ["failed"]
        assert "refused" in logs[0].error_message

    def test_partial_failure_raises_and_retry_sends_only_the_rest(self, app, org, instance):
        row = NotificationService.list_for_instance(instance.id)[0]
        app.config["MAIL_SERVER"] = "smtp.bpm.test"
        try:
            with patch.object(EmailService, "_send_smtp", side_effect=[None, OSError("mailbox full")]):
                with pytest.raises(ExternalServiceError, match="1 of 2 emails failed"):
                    EmailNotifier().send([org["bob"], org["alice"]], row)
            with patch.object(EmailService, "_send_smtp") as smtp:
                logs = EmailNotifier().send([org["bob"], org["alice"]], row)
        finally:
            app.config["MAIL_SERVER"] = None

        assert [log.recipient_email for log in logs] == [org["alice"].email]
        assert smtp.call_count == 1
        assert smtp.call_args.kwargs["to_email"] == org["alice"].email

    def test_recipient_already_emailed_is_skipped(self, org, instance):
        row = NotificationService.list_for_instance(instance.id)[0]
        EmailNotifier().send([org["bob"]], row)

        logs = EmailNotifier().send([org["bob"], org["alice"]], row)

        assert [log.recipient_email for log in logs] == [org["alice"].email]
        assert EmailLog.query.filter_by(outbox_id=row.id, recipient_email=org["bob"].email).count() == 1

    def test_unreachable_mail_server_leaves_outbox_failed(self, app, org, make_template):
        template = make_template(
            [{"name": "Check", "approver_position_ids": [org["accountant"].id]}],
            departments=[org["department"]],
        )
        app.extensions.pop("bpm_notifier")
        saved = {key: app.config.get(key) for key in ("MAIL_SERVER", "MAIL_PORT", "MAIL_USE_TLS")}
        app.config.update(MAIL_SERVER="127.0.0.1", MAIL_PORT=1, MAIL_USE_TLS=False)
        try:
            instance = instance_service.start_process_instance(org["manager"], template.id, "Laptop")
        finally:
            app.config.update(saved)

        rows = NotificationService.list_for_instance(instance.id)
        assert [r.status for r in rows] == [OUTBOX_FAILED]
        assert rows[0].error_message.startswith("smtp: 2 of 2 emails failed")
        logs = EmailLog.query.filter_by(outbox_id=rows[0].id).all()
        assert sorted(log.recipient_email for log in logs) == sorted([org["alice"].email, org["bob"].email])
        assert all(log.status == "failed" for log in logs)

        result = NotificationService.retry_failed()

        assert result == {"sent": 1, "failed": 0, "pending": 0}
        assert NotificationService.list_for_instance(instance.id, status=OUTBOX_SENT) != []
        sent = EmailLog.query.filter_by(outbox_id=rows[0].id, status="sent").count()
        assert sent == 2


class TestClaim:
    @pytest.fixture()
    def assigned_row(self, instance):
        row = NotificationService.list_for_instance(instance.id)[0]
        row.status = OUTBOX_PENDING
        db.session.commit()
        return row

    def test_row_is_claimed_once(self, assigned_row):
        assert NotificationService.claim([assigned_row.id]) == [assigned_row.id]
        assert NotificationService.claim([assigned_row.id]) == []

        db.session.refresh(assigned_row)
        assert assigned_row.status == OUTBOX_SENDING
        assert assigned_row.dispatched_at is not None

    def test_dispatch_leaves_rows_claimed_by_another_worker(self, app, org, instance, notifier):
        app.config["NOTIFICATIONS_ENABLED"] = False
        try:
            task_service.reject_task(org["bob"], instance.task_assignments[0].id, "no")
        finally:
            app.config["NOTIFICATIONS_ENABLED"] = True
        assigned = NotificationService.list_for_instance(instance.id)[0]
        assigned.status = OUTBOX_PENDING
        db.session.commit()
        assert NotificationService.claim([assigned.id]) == [assigned.id]
        notifier.sent.clear()

        result = NotificationService.dispatch_pending()

        assert result == {"sent": 1, "failed": 0, "pending": 0}
        assert [e["event_kind"] for e in notifier.sent] == [EVENT_TASK_REJECTED]
        db.session.refresh(assigned)
        assert assigned.status == OUTBOX_SENDING

    def test_retry_requeues_stale_sending_rows(self, assigned_row, notifier):
        NotificationService.claim([assigned_row.id])
        db.session.refresh(assigned_row)
        assigned_row.dispatched_at = datetime.now(timezone.utc) - timedelta(hours=1)
        db.session.commit()
        notifier.sent.clear()

        result = NotificationService.retry_failed()

        assert result["sent"] == 1
        assert [e["event_kind"] for e in notifier.sent] == [EVENT_TASK_ASSIGNED]
        db.session.refresh(assigned_row)
        assert assigned_row.status == OUTBOX_SENT

    def test_retry_leaves_fresh_sending_rows(self, assigned_row, notifier):
        NotificationService.claim([assigned_row.id])
        notifier.sent.clear()

        result = NotificationService.retry_failed()

        assert result == {"sent": 0, "failed": 0, "pending": 0}
        assert notifier.sent == []
        db.session.refresh(assigned_row)
        assert assigned_row.status == OUTBOX_SENDING
