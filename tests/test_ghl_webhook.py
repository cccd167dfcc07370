import base64
import json

import pytest

from esp_integration.domain.errors import MalformedPayload
from esp_integration.providers.ghl.webhook import GhlWebhook, extract_campaign_ids, extract_email_stats


def _payload(event="opened", **webhook_payload):
    return {
        "type": "LCEmailStats",
        "locationId": "loc-1",
        "webhookPayload": {"event": event, "id": "evt-1", "timestamp": 1767225600, **webhook_payload},
    }


def test_campaign_ids_come_from_campaigns_and_id_shaped_tags():
    ids = extract_campaign_ids(
        {"campaigns": ["cmp-AAAAAAAAAA", "cmp-AAAAAAAAAA", ""], "tags": ["vip", "sched_123456789", "has space 1234"]}
    )
    assert ids == ["cmp-AAAAAAAAAA", "sched_123456789"]


def test_one_event_per_campaign_id():
    result = extract_email_stats(_payload(campaigns=["cmp-1", "cmp-2"]))

    assert result.skipped == []
    assert [(e.campaign_id, e.column, e.account_id) for e in result.events] == [
        ("cmp-1", "opened_count", "loc-1"),
        ("cmp-2", "opened_count", "loc-1"),
    ]
    assert result.events[0].dedup_key() == "evt-1:cmp-1:opened_count"
    assert result.events[0].occurred_at.year == 2026


def test_unmapped_event_is_skipped():
    result = extract_email_stats(_payload(event="accepted", campaigns=["cmp-1"]))
    assert result.events == []
    assert result.skipped[0].reason == "unsupported-event"
    assert result.skipped[0].raw_event_name == "accepted"


def test_missing_campaign_id_is_skipped():
    result = extract_email_stats(_payload(event="delivered", tags=["short"]))
    assert result.events == []
    assert result.skipped[0].reason == "no-campaign-id"


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"type": "ContactCreate", "locationId": "loc-1", "webhookPayload": {}},
        {"type": "LCEmailStats", "webhookPayload": {"event": "opened"}},
        {"type": "LCEmailStats", "locationId": "loc-1", "webhookPayload": "opened"},
    ],
)
def test_wrong_shape_is_malformed(payload):
    with pytest.raises(MalformedPayload, match="Unsupported webhook type"):
        extract_email_stats(payload)


def test_rsa_signature_verification(ghl_public_key_pem, sign_ghl):
    webhook = GhlWebhook(ghl_public_key_pem)
    body = json.dumps(_payload(campaigns=["cmp-1"])).encode("utf-8")
    signature = sign_ghl(body)

    assert webhook.verify_signature(body, signature, {}) is True
    assert webhook.verify_signature(body + b" ", signature, {}) is False
    assert webhook.verify_signature(body, None, {}) is False
    assert webhook.verify_signature(body, "%%%not-base64%%%", {}) is False
    assert webhook.verify_signature(body, base64.b64encode(b"x" * 256).decode(), {}) is False


def test_escaped_newlines_in_configured_key_are_accepted(ghl_public_key_pem, sign_ghl):
    webhook = GhlWebhook(ghl_public_key_pem.replace("\n", "\\n"))
    body = b'{"type":"LCEmailStats"}'
    assert webhook.verify_signature(body, sign_ghl(body), {}) is True


def test_missing_public_key_only_passes_in_permissive_dev():
    assert GhlWebhook(None).verify_signature(b"{}", "sig", {}) is False
    assert GhlWebhook(None, "enforce").verify_signature(b"{}", None, {}) is False
    assert GhlWebhook("", "permissive_dev").verify_signature(b"{}", None, {}) is True
