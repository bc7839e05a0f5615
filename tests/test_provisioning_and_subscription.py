"""Tests for assistant provisioning, webhook subscription and setup validation."""

from __future__ import annotations

import asyncio
import uuid

import pytest

from core.models import ServiceMapping
from infra import assistant_provisioning, webhook_subscription
from infra.setup_validation import validate_practice
from sdk.errors import GatewayError


class TestAssistantPayload:
    def test_payload_points_back_at_voice_webhook(self, db, make_practice):
        practice = make_practice(name="Bright Smiles", vapi_system_prompt_override="Parking is free.")

        payload = assistant_provisioning.build_assistant_payload(practice)

        assert payload["name"] == "LAINE - Bright Smiles"
        assert payload["server"]["url"] == "https://laine.example.com/webhook/voice-platform"
        assert payload["server"]["secret"] == "test-vapi-webhook-secret"
        assert payload["voice"] == {"provider": "playht", "voiceId": "jennifer"}
        assert "end-of-call-report" in payload["serverMessages"]
        system = payload["model"]["messages"][0]["content"]
        assert "Bright Smiles" in system
        assert system.rstrip().endswith("Parking is free.")

    def test_tools_match_executor(self, db, make_practice):
        from infra.tool_calls import TOOLS

        names = {t["function"]["name"] for t in assistant_provisioning.TOOL_DEFINITIONS}
        assert names <= set(TOOLS)


class TestProvisionAssistant:
    def test_placeholder_when_not_configured(self, db, make_practice, vapi):
        practice = make_practice(assistant_id=None)
        vapi.configured = False

        assistant_id = asyncio.run(assistant_provisioning.provision_assistant(practice, vapi))

        assert assistant_id.startswith(f"mock_assistant_{practice.id}_")
        vapi.create_assistant.assert_not_called()

    def test_existing_id_kept_when_not_configured(self, db, make_practice, vapi):
        practice = make_practice()
        vapi.configured = False
        assert asyncio.run(assistant_provisioning.provision_assistant(practice, vapi)) == "asst-1"

    def test_existing_assistant_is_updated(self, db, make_practice, vapi):
        existing = str(uuid.uuid4())
        practice = make_practice(assistant_id=existing)
        vapi.update_assistant.return_value = {"id": existing}

        assert asyncio.run(assistant_provisioning.provision_assistant(practice, vapi)) == existing
        vapi.create_assistant.assert_not_called()

    def test_failed_update_falls_back_to_create(self, db, make_practice, vapi):
        practice = make_practice(assistant_id=str(uuid.uuid4()))
        vapi.update_assistant.side_effect = GatewayError("vapi", "Not Found", 404)
        vapi.create_assistant.return_value = {"id": "asst-fresh"}

        assert asyncio.run(assistant_provisioning.provision_assistant(practice, vapi)) == "asst-fresh"

    def test_create_failure_returns_placeholder(self, db, make_practice, vapi):
        practice = make_practice(assistant_id=None)
        vapi.create_assistant.side_effect = GatewayError("vapi", "down", 503)

        assistant_id = asyncio.run(assistant_provisioning.provision_assistant(practice, vapi))

        assert assistant_id.startswith(f"mock_assistant_{practice.id}_")
        vapi.update_assistant.assert_not_called()

    def test_existing_id_kept_when_platform_down(self, db, make_practice, vapi):
        existing = str(uuid.uuid4())
        practice = make_practice(assistant_id=existing)
        vapi.update_assistant.side_effect = GatewayError("vapi", "down", 503)
        vapi.create_assistant.side_effect = GatewayError("vapi", "down", 503)

        assert asyncio.run(assistant_provisioning.provision_assistant(practice, vapi)) == existing


class TestWebhookSubscription:
    @pytest.fixture
    def endpoint(self, nexhealth):
        nexhealth.list_webhook_endpoints.return_value = [
            {"id": 3, "target_url": "https://elsewhere.example.com/hook"},
            {"id": 5, "target_url": "https://laine.example.com/webhook/scheduling"},
        ]
        return nexhealth

    def test_success_records_connection(self, db, make_practice, endpoint):
        practice = make_practice()
        endpoint.subscribe_to_webhooks.return_value = {"id": 42}

        result = asyncio.run(webhook_subscription.subscribe_practice(db, practice, endpoint))

        assert result == {"success": True, "status": "CONNECTED"}
        assert practice.webhook_status == "CONNECTED"
        assert practice.webhook_subscription_id == "42"
        assert practice.webhook_last_success is not None
        endpoint.subscribe_to_webhooks.assert_awaited_once_with("5", "brightsmiles")
        endpoint.create_webhook_endpoint.assert_not_called()

    def test_existing_subscription_counts_as_connected(self, db, make_practice, endpoint):
        practice = make_practice()
        endpoint.subscribe_to_webhooks.side_effect = GatewayError("nexhealth", "conflict", 409)

        result = asyncio.run(webhook_subscription.subscribe_practice(db, practice, endpoint))

        assert result["success"] is True
        assert practice.webhook_status == "CONNECTED"

    @pytest.mark.parametrize(
        "status_code, error",
        [(404, "SUBDOMAIN_NOT_FOUND"), (429, "RATE_LIMITED"), (500, "SUBSCRIPTION_FAILED")],
    )
    def test_failures_are_recorded(self, db, make_practice, endpoint, status_code, error):
        practice = make_practice()
        endpoint.subscribe_to_webhooks.side_effect = GatewayError("nexhealth", "nope", status_code)

        result = asyncio.run(webhook_subscription.subscribe_practice(db, practice, endpoint))

        assert result["error"] == error
        assert practice.webhook_status == "ERROR"
        assert practice.webhook_error_message
        assert practice.webhook_last_attempt is not None

    def test_endpoint_is_created_when_missing(self, db, make_practice, nexhealth):
        practice = make_practice()
        nexhealth.list_webhook_endpoints.return_value = []
        nexhealth.create_webhook_endpoint.return_value = {"id": 9}

        asyncio.run(webhook_subscription.subscribe_practice(db, practice, nexhealth))

        nexhealth.subscribe_to_webhooks.assert_awaited_once_with("9", "brightsmiles")

    def test_describe_status(self, db, make_practice):
        practice = make_practice()
        described = webhook_subscription.describe_status(practice)
        assert described["status"] == "UNKNOWN"
        assert described["can_retry"] is True

        practice.webhook_status = "CONNECTING"
        assert webhook_subscription.describe_status(practice)["can_retry"] is False


class TestSetupValidation:
    def test_complete_practice(self, db, make_practice):
        practice = make_practice()
        for spoken in ("Cleaning", "Checkup", "New patient consultation"):
            db.add(ServiceMapping(practice_id=practice.id, spoken_service_name=spoken,
                                  nexhealth_appointment_type_id="7"))
        db.commit()
        db.refresh(practice)

        result = validate_practice(practice)

        assert result == {"is_complete": True, "completion_score": 100, "issues": [], "recommendations": []}

    def test_missing_common_services(self, db, make_practice):
        practice = make_practice()
        db.add(ServiceMapping(practice_id=practice.id, spoken_service_name="Cleaning",
                              nexhealth_appointment_type_id="7"))
        db.commit()
        db.refresh(practice)

        result = validate_practice(practice)

        assert result["issues"] == ["Missing common service mappings: checkup, consultation"]

    def test_empty_practice_scores_low(self, db, make_practice):
        practice = make_practice(assistant_id=None, nexhealth_location_id=None, selected_provider_ids=[])
        result = validate_practice(practice)
        assert len(result["issues"]) == 4
        assert result["completion_score"] == 43
