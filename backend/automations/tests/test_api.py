import uuid

from django.contrib.auth import get_user_model
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from automations.models import Automation, AutomationRun, Credential, EventLog
from automations.scheduler import SIGNATURE_HEADER, encode_message, sign
from crm.models import Contact
from platformapp.models import AuditLog, Tenant

from .factories import edge, make_automation, make_run, node, provider_token, vip_welcome_graph

User = get_user_model()

SIGNATURE_META = "HTTP_" + SIGNATURE_HEADER.upper().replace("-", "_")


class TenantAPITestCase(APITestCase):
    def setUp(self):
        self.tenant = Tenant.objects.create(slug="acme", name="Acme")
        self.other = Tenant.objects.create(slug="globex", name="Globex")
        self.user = User.objects.create_user(username="ops", password="pw-123456")
        self.client.force_authenticate(self.user)
        self.client.credentials(HTTP_X_TENANT_ID=str(self.tenant.id))
        self.contact = Contact.objects.create(tenant=self.tenant, first_name="ana", email="ana@example.com")


class AutomationAPITest(TenantAPITestCase):
    def test_list_is_tenant_scoped(self):
        mine = make_automation(self.tenant, *vip_welcome_graph())
        make_automation(self.other, *vip_welcome_graph())

        response = self.client.get(reverse("automation-list"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([a["id"] for a in response.json()["results"]], [str(mine.id)])

    def test_tenant_header_is_required(self):
        self.client.credentials()
        response = self.client.get(reverse("automation-list"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_create_draft_allows_incomplete_graph(self):
        data = {"name": "Draft", "trigger_type": "contact_created", "nodes": [], "edges": [],
                "tenant": str(self.other.id), "webhook_token": "mine"}
        response = self.client.post(reverse("automation-list"), data, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        automation = Automation.objects.get(id=response.json()["id"])
        self.assertEqual(automation.tenant_id, self.tenant.id)
        self.assertEqual(automation.status, "draft")
        self.assertNotEqual(automation.webhook_token, "mine")

    def test_create_active_requires_runnable_graph(self):
        data = {"name": "Broken", "trigger_type": "contact_created", "status": "active",
                "nodes": [node("a1", "notify_team", message="x")], "edges": []}
        response = self.client.post(reverse("automation-list"), data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("nodes", response.json())

    def test_unknown_node_type_is_rejected_for_drafts(self):
        data = {"name": "Odd", "trigger_type": "manual", "nodes": [node("x", "teleport")], "edges": []}
        response = self.client.post(reverse("automation-list"), data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_trigger_config_must_be_an_object(self):
        data = {"name": "Odd", "trigger_type": "tag_added", "trigger_config": ["vip"]}
        response = self.client.post(reverse("automation-list"), data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("trigger_config", response.json())

    def test_activate_validates_graph(self):
        automation = make_automation(self.tenant, [node("a1", "notify_team", message="x")], [], status="draft")
        url = reverse("automation-activate", args=[automation.id])

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertTrue(response.json()["errors"])

        automation.nodes, automation.edges = vip_welcome_graph()
        automation.edges.append(edge("c1", "a1", "false"))
        automation.save()
        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "active")
        self.assertTrue(AuditLog.objects.filter(tenant=self.tenant, action="automation.active").exists())

        response = self.client.post(reverse("automation-pause", args=[automation.id]))
        self.assertEqual(response.json()["status"], "paused")

    def test_validate_reports_errors(self):
        automation = make_automation(self.tenant, *vip_welcome_graph(), status="draft")
        response = self.client.post(reverse("automation-validate", args=[automation.id]))
        body = response.json()
        self.assertFalse(body["valid"])
        self.assertIn("condition node 'c1' is missing an edge for branch 'false'", body["errors"])

    def test_manual_trigger(self):
        automation = make_automation(self.tenant, *vip_welcome_graph(), status="paused")
        url = reverse("automation-trigger", args=[automation.id])

        self.assertEqual(self.client.post(url, {}, format="json").status_code, status.HTTP_409_CONFLICT)

        automation.status = "active"
        automation.save()
        response = self.client.post(url, {"contact_id": str(self.contact.id)}, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        run = AutomationRun.objects.get(id=response.json()["id"])
        self.assertEqual(run.status, "pending")
        self.assertEqual(run.contact_id, self.contact.id)
        self.assertEqual(response.json()["automation_name"], automation.name)

    def test_other_tenants_automation_is_not_found(self):
        foreign = make_automation(self.other, *vip_welcome_graph())
        response = self.client.post(reverse("automation-trigger", args=[foreign.id]), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class RunAndEventAPITest(TenantAPITestCase):
    def test_runs_cannot_be_created_directly(self):
        response = self.client.post(reverse("automation-run-list"), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)

    def test_cancel_run(self):
        run = make_run(make_automation(self.tenant, *vip_welcome_graph()), self.contact, status="waiting")
        url = reverse("automation-run-cancel", args=[run.id])

        response = self.client.post(url, {"reason": "duplicate lead"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "cancelled")
        self.assertEqual(response.json()["last_error"], "duplicate lead")

        self.assertEqual(self.client.post(url).status_code, status.HTTP_409_CONFLICT)

    def test_run_list_filters_by_status(self):
        automation = make_automation(self.tenant, *vip_welcome_graph())
        make_run(automation, status="failed")
        make_run(automation, status="completed")
        response = self.client.get(reverse("automation-run-list"), {"status": "failed"})
        self.assertEqual(response.json()["count"], 1)

    def test_emit_event(self):
        make_automation(self.tenant, *vip_welcome_graph())
        response = self.client.post(
            reverse("automation-event-emit"),
            {"event_type": "contact.created", "contact_id": str(self.contact.id)},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        self.assertEqual(response.json()["automations_triggered"], 1)
        event = EventLog.objects.get(id=response.json()["event_id"])
        self.assertEqual((event.tenant_id, event.source, event.processed), (self.tenant.id, "api", True))

    def test_events_are_not_created_through_crud(self):
        response = self.client.post(reverse("automation-event-list"), {"event_type": "x"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)


class CredentialAPITest(TenantAPITestCase):
    def test_secret_is_write_only(self):
        response = self.client.post(
            reverse("automation-credential-list"),
            {"name": "gateway", "provider": "whatsapp", "secret": {"token": "tok_abcdefghijkl", "url": "https://gw"}},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        body = response.json()
        self.assertNotIn("secret", body)
        self.assertEqual(body["preview"]["token"], "tok_****ijkl")

        cred = Credential.objects.get(id=body["id"])
        self.assertEqual(cred.tenant_id, self.tenant.id)
        self.assertNotIn("tok_abcdefghijkl", cred.encrypted_data)
        self.assertEqual(cred.get_secret()["token"], "tok_abcdefghijkl")

    def test_secret_required_and_names_unique(self):
        url = reverse("automation-credential-list")
        response = self.client.post(url, {"name": "gw", "provider": "sms"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        data = {"name": "gw", "provider": "sms", "secret": {"token": "abc"}}
        self.assertEqual(self.client.post(url, data, format="json").status_code, status.HTTP_201_CREATED)
        self.assertEqual(self.client.post(url, data, format="json").status_code, status.HTTP_400_BAD_REQUEST)

    def test_rotating_a_secret(self):
        cred = Credential(tenant=self.tenant, name="hook", provider="webhook")
        cred.set_secret({"token": "old-token-value"})
        cred.save()
        url = reverse("automation-credential-detail", args=[cred.id])

        response = self.client.patch(url, {"secret": {"token": "new-token-value"}}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        cred.refresh_from_db()
        self.assertEqual(cred.get_secret(), {"token": "new-token-value"})


class WorkerStepAPITest(TenantAPITestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(None)
        self.client.credentials()
        self.url = reverse("automation-worker-step")

    def _post(self, job_type, data, key="test-current-queue-signing-key-0001", signature=None):
        body = encode_message(job_type, data)
        if signature is None:
            signature = sign(body, key)
        return self.client.generic("POST", self.url, body, content_type="application/json",
                                   **{SIGNATURE_META: signature})

    def test_unsigned_or_forged_delivery_is_rejected(self):
        run = make_run(make_automation(self.tenant, *vip_welcome_graph()), self.contact)
        self.assertEqual(self._post("automation_step", {"runId": str(run.id)}, signature="").status_code, 401)
        self.assertEqual(self._post("automation_step", {"runId": str(run.id)}, key="guess").status_code, 401)
        run.refresh_from_db()
        self.assertEqual(run.status, "pending")

    def test_unknown_job_type(self):
        response = self._post("reindex", {"runId": "x"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_signed_delivery_executes_step(self):
        run = make_run(make_automation(self.tenant, *vip_welcome_graph()), self.contact)

        response = self._post("automation_step", {"runId": str(run.id), "nodeId": "t1", "context": {}},
                              key="test-next-queue-signing-key-0002")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {"success": True, "status": "completed", "skipped": False})

        again = self._post("automation_step", {"runId": str(run.id), "nodeId": "t1"})
        self.assertTrue(again.json()["skipped"])

    def test_qstash_callback_token_executes_step(self):
        callback = "http://testserver" + self.url
        run = make_run(make_automation(self.tenant, *vip_welcome_graph()), self.contact)
        body = encode_message("automation_step", {"runId": str(run.id), "nodeId": "t1", "context": {}})

        with self.settings(AUTOMATION_QUEUE_BACKEND="http", AUTOMATION_QUEUE_CALLBACK_URL=callback):
            forged = self._post("automation_step", {"runId": str(run.id), "nodeId": "t1"})
            self.assertEqual(forged.status_code, status.HTTP_401_UNAUTHORIZED)
            token = provider_token(body, "test-current-queue-signing-key-0001", callback)
            response = self.client.generic("POST", self.url, body, content_type="application/json",
                                           **{SIGNATURE_META: token})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {"success": True, "status": "completed", "skipped": False})
        run.refresh_from_db()
        self.assertEqual(run.status, "completed")

    def test_missing_run_is_acknowledged(self):
        response = self._post("automation_step", {"runId": str(uuid.uuid4()), "nodeId": "t1"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.json()["success"])

    def test_failed_run_is_acknowledged(self):
        nodes = [node("t1", "trigger", start=True), node("n1", "notify_team")]
        run = make_run(make_automation(self.tenant, nodes, [edge("t1", "n1")]))
        response = self._post("automation_step", {"runId": str(run.id), "nodeId": "t1"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "failed")
        self.assertIn("notify_team requires 'message'", response.json()["error"])


class SweepAPITest(TenantAPITestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(None)
        self.client.credentials()
        self.url = reverse("automation-worker-sweep")

    def test_requires_cron_secret(self):
        self.assertEqual(self.client.post(self.url).status_code, status.HTTP_403_FORBIDDEN)
        self.client.credentials(HTTP_AUTHORIZATION="Bearer wrong")
        self.assertEqual(self.client.post(self.url).status_code, status.HTTP_403_FORBIDDEN)

    def test_runs_selected_sweeps(self):
        self.client.credentials(HTTP_AUTHORIZATION="Bearer test-cron-secret")
        make_run(make_automation(self.tenant, *vip_welcome_graph()), self.contact)

        response = self.client.post(self.url + "?only=runs")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(set(response.json()), {"success", "runs"})
        self.assertEqual(response.json()["runs"]["started"], 1)

        self.assertEqual(set(self.client.post(self.url).json()), {"success", "events", "runs", "delayed", "stale"})
        self.assertEqual(self.client.post(self.url + "?only=everything").status_code, 400)


class WebhookTriggerAPITest(TenantAPITestCase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(None)
        self.client.credentials()

    def test_unknown_token(self):
        response = self.client.post(reverse("automation-webhook", args=["nope"]), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_webhook_starts_a_run(self):
        automation = make_automation(self.tenant, *vip_welcome_graph(), trigger_type="webhook_received")
        url = reverse("automation-webhook", args=[automation.webhook_token])

        response = self.client.post(url, {"email": "lead@example.com", "plan": "pro"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        run = AutomationRun.objects.get(id=response.json()["run_id"])
        self.assertEqual(run.automation_id, automation.id)
        self.assertEqual(run.context["email"], "lead@example.com")
        self.assertEqual(run.context["trigger"]["data"]["plan"], "pro")
        self.assertEqual(run.context["trigger"]["data"]["webhook_id"], str(automation.id))
        self.assertEqual(run.trigger_event.source, "webhook")

    def test_paused_automation(self):
        automation = make_automation(self.tenant, *vip_welcome_graph(), status="paused")
        response = self.client.post(reverse("automation-webhook", args=[automation.webhook_token]), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
