import logging
import unittest
from unittest.mock import Mock, patch

logging.disable(logging.CRITICAL)


class JiraWebhookEndpointTests(unittest.TestCase):
    def test_webhook_acknowledges_and_reconciles(self):
        from app.api.jira import jira_webhook

        db = Mock()
        payload = {"issue": {"key": "PROJ-1", "fields": {"status": {"name": "Done"}}}}

        with patch("app.api.jira.InboundReconciler") as reconciler_cls:
            result = jira_webhook(payload, db=db)

        self.assertEqual(result, {"received": True})
        reconciler_cls.assert_called_once_with(db)
        reconciler_cls.return_value.reconcile.assert_called_once_with(payload)
        db.rollback.assert_not_called()

    def test_webhook_acknowledges_even_when_reconcile_fails(self):
        from app.api.jira import jira_webhook

        db = Mock()

        with patch("app.api.jira.InboundReconciler") as reconciler_cls:
            reconciler_cls.return_value.reconcile = Mock(side_effect=RuntimeError("db down"))
            result = jira_webhook({"issueKey": "PROJ-1"}, db=db)

        self.assertEqual(result, {"received": True})
        db.rollback.assert_called_once()

    def test_webhook_acknowledges_garbage_payload(self):
        from app.api.jira import jira_webhook

        with patch("app.api.jira.InboundReconciler") as reconciler_cls:
            reconciler_cls.return_value.reconcile = Mock(return_value=Mock(action="ignored"))
            self.assertEqual(jira_webhook("not json", db=Mock()), {"received": True})


if __name__ == "__main__":
    unittest.main()
