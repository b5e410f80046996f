"""Tests for the Celery job wrappers (session handling, retries, follow-up jobs)."""

from unittest.mock import MagicMock, patch

import pytest

from app.services.isolation import SwitchOutcome
from app.services.notification import DeliveryResult, NotificationError


class Escalated(Exception):
    pass


def _escalate(task, policy, exc, context=None, on_failure=None, retry_args=None):
    raise Escalated(exc, retry_args)


class TestBillingTasks:
    def test_generate_invoices_returns_summary(self):
        from app.tasks.billing import generate_invoices

        session = MagicMock()
        engine = MagicMock()
        engine.generate_invoices_for_due_services.return_value.summary.return_value = {
            "created": 2,
            "skipped": 1,
            "failed": 0,
        }
        with patch("app.tasks.billing.SessionLocal", return_value=session), patch(
            "app.tasks.billing.get_billing_engine", return_value=engine
        ):
            result = generate_invoices()

        assert result == {"created": 2, "skipped": 1, "failed": 0}
        engine.generate_invoices_for_due_services.assert_called_once_with(session)
        session.close.assert_called_once()

    def test_generate_invoices_rolls_back_on_error(self):
        from app.tasks.billing import generate_invoices

        session = MagicMock()
        engine = MagicMock()
        engine.generate_invoices_for_due_services.side_effect = RuntimeError("db down")
        with patch("app.tasks.billing.SessionLocal", return_value=session), patch(
            "app.tasks.billing.get_billing_engine", return_value=engine
        ):
            with pytest.raises(RuntimeError):
                generate_invoices()

        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_check_overdue_queues_isolations(self):
        from app.tasks.billing import check_overdue_invoices

        with patch("app.tasks.billing.SessionLocal", return_value=MagicMock()), patch(
            "app.tasks.billing.get_isolation_engine"
        ), patch("app.tasks.billing.get_job_dispatcher"), patch(
            "app.tasks.billing.queue_overdue_isolations", return_value=3
        ):
            assert check_overdue_invoices() == {"queued": 3}


class TestIsolationTasks:
    def _run(self, task, outcome, *args):
        engine = MagicMock()
        engine.process_isolation.return_value = outcome
        engine.process_restoration.return_value = outcome
        dispatcher = MagicMock()
        with patch("app.tasks.isolation.SessionLocal", return_value=MagicMock()), patch(
            "app.tasks.isolation.get_isolation_engine", return_value=engine
        ), patch("app.tasks.isolation.get_job_dispatcher", return_value=dispatcher), patch(
            "app.tasks.isolation.retry_or_escalate", side_effect=_escalate
        ) as escalate:
            try:
                result = task(*args)
            except Escalated as exc:
                result = exc
        return result, dispatcher, escalate

    def test_applied_isolation_queues_notice(self):
        from app.tasks.isolation import process_isolation

        result, dispatcher, escalate = self._run(process_isolation, SwitchOutcome.applied, "s1", "i1")

        assert result == "applied"
        dispatcher.enqueue_isolation_notification.assert_called_once_with("s1", "i1")
        escalate.assert_not_called()

    def test_skipped_isolation_sends_nothing(self):
        from app.tasks.isolation import process_isolation

        result, dispatcher, escalate = self._run(
            process_isolation, SwitchOutcome.precondition_failed, "s1", "i1"
        )

        assert result == "precondition_failed"
        dispatcher.enqueue_isolation_notification.assert_not_called()
        escalate.assert_not_called()

    def test_router_failure_is_retried(self):
        from app.tasks.isolation import RouterUpdateFailed, process_isolation

        result, dispatcher, escalate = self._run(
            process_isolation, SwitchOutcome.router_failed, "s1", "i1"
        )

        assert isinstance(result, Escalated)
        assert isinstance(result.args[0], RouterUpdateFailed)
        dispatcher.enqueue_isolation_notification.assert_not_called()

    def test_engine_error_rolls_back_and_retries(self):
        from app.tasks.isolation import process_isolation

        session = MagicMock()
        engine = MagicMock()
        engine.process_isolation.side_effect = RuntimeError("db gone")
        with patch("app.tasks.isolation.SessionLocal", return_value=session), patch(
            "app.tasks.isolation.get_isolation_engine", return_value=engine
        ), patch("app.tasks.isolation.retry_or_escalate", side_effect=_escalate):
            with pytest.raises(Escalated):
                process_isolation("s1", "i1")

        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_restoration_queues_notice(self):
        from app.tasks.isolation import restore_service

        result, dispatcher, _ = self._run(restore_service, SwitchOutcome.applied, "s1")

        assert result == "applied"
        dispatcher.enqueue_restoration_notification.assert_called_once_with("s1")

    def test_notice_dispatch_failure_does_not_fail_restoration(self):
        from app.tasks.isolation import restore_service

        engine = MagicMock()
        engine.process_restoration.return_value = SwitchOutcome.applied
        dispatcher = MagicMock()
        dispatcher.enqueue_restoration_notification.side_effect = RuntimeError("broker down")
        with patch("app.tasks.isolation.SessionLocal", return_value=MagicMock()), patch(
            "app.tasks.isolation.get_isolation_engine", return_value=engine
        ), patch("app.tasks.isolation.get_job_dispatcher", return_value=dispatcher):
            assert restore_service("s1") == "applied"


class TestNotificationTasks:
    def test_send_notification_retries_failed_delivery(self):
        from app.tasks.notifications import send_notification

        sender = MagicMock()
        sender.send.return_value = False
        with patch("app.tasks.notifications.get_notification_sender", return_value=sender), patch(
            "app.tasks.notifications.retry_or_escalate", side_effect=_escalate
        ):
            with pytest.raises(Escalated) as excinfo:
                send_notification("whatsapp", "0812", "hi")

        assert isinstance(excinfo.value.args[0], NotificationError)

    def test_send_notification_success(self):
        from app.tasks.notifications import send_notification

        sender = MagicMock()
        sender.send.return_value = True
        with patch("app.tasks.notifications.get_notification_sender", return_value=sender):
            assert send_notification("email", "a@example.com", "hi", "Subj") is True

        sender.send.assert_called_once_with("email", "a@example.com", "hi", "Subj")

    def test_bulk_retries_only_failed_recipients(self):
        from app.tasks.notifications import send_bulk_notification

        recipients = [
            {"recipient": "0811", "message": "a"},
            {"recipient": "0812", "message": "b"},
            {"recipient": "0813", "message": "c"},
        ]
        sender = MagicMock()
        sender.send_bulk.return_value = [
            DeliveryResult("0811", True),
            DeliveryResult("0812", False, "delivery failed"),
            DeliveryResult("0813", False, "delivery failed"),
        ]
        with patch("app.tasks.notifications.get_notification_sender", return_value=sender), patch(
            "app.tasks.notifications.retry_or_escalate", side_effect=_escalate
        ):
            with pytest.raises(Escalated) as excinfo:
                send_bulk_notification("whatsapp", recipients)

        channel, pending = excinfo.value.args[1]
        assert channel == "whatsapp"
        assert [item["recipient"] for item in pending] == ["0812", "0813"]

    def test_bulk_above_threshold_returns_summary(self):
        from app.tasks.notifications import send_bulk_notification

        sender = MagicMock()
        sender.send_bulk.return_value = [DeliveryResult("0811", True), DeliveryResult("0812", False)]
        with patch("app.tasks.notifications.get_notification_sender", return_value=sender):
            summary = send_bulk_notification(
                "whatsapp",
                [{"recipient": "0811", "message": "a"}, {"recipient": "0812", "message": "b"}],
            )

        assert summary == {"total": 2, "sent": 1, "failed": 1}

    def test_isolation_notice_task_wraps_session(self):
        from app.tasks.notifications import send_isolation_notification

        session = MagicMock()
        sender = MagicMock()
        with patch("app.tasks.notifications.SessionLocal", return_value=session), patch(
            "app.tasks.notifications.get_notification_sender", return_value=sender
        ), patch(
            "app.tasks.notifications.notification_service.notify_isolation",
            return_value={"whatsapp": True},
        ) as notify:
            assert send_isolation_notification("s1", "i1") == {"whatsapp": True}

        notify.assert_called_once_with(session, sender, "s1", "i1")
        session.close.assert_called_once()

    def test_payment_confirmation_failure_is_retried(self):
        from app.tasks.notifications import send_payment_confirmation

        session = MagicMock()
        with patch("app.tasks.notifications.SessionLocal", return_value=session), patch(
            "app.tasks.notifications.get_notification_sender"
        ), patch(
            "app.tasks.notifications.notification_service.notify_payment_confirmation",
            side_effect=NotificationError("all channels failed"),
        ), patch("app.tasks.notifications.retry_or_escalate", side_effect=_escalate):
            with pytest.raises(Escalated):
                send_payment_confirmation("i1", "p1")

        session.rollback.assert_called_once()
