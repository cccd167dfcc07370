import hashlib
import hmac

import pytest

from esp_integration.domain.errors import MalformedPayload
from esp_integration.providers.klaviyo.webhook import KlaviyoWebhook, extract_email_stats


def _sign(secret: str, body: bytes, timestamp: str | None = None) -> str:
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha256)
    if timestamp:
        mac.update(timestamp.encode("utf-8"))
    return mac.hexdigest()


def test_json_api_style_batch_is_normalized():
    payload = {
        "meta": {"account_id": "KL123"},
        "data": [
            {
                "id": "evt-1",
                "attributes": {
                    "metric": {"name": "Opened Email"},
                    "name": "Opened Email",
                    "event_properties": {"campaign_id": "01HCAMPAIGN"},
                    "timestamp": "2026-02-01T09:30:00+00:00",
                },
            },
            {
                "id": "evt-2",
                "attributes": {
                    "name": "Clicked Email",
                    "properties": {"campaign_ids": ["01HA", "01HB"]},
                },
            },
        ],
    }

    result = extract_email_stats(payload)

    assert [(e.account_id, e.campaign_id, e.column, e.event_id) for e in result.events] == [
        ("KL123", "01HCAMPAIGN", "opened_count", "evt-1"),
        ("KL123", "01HA", "clicked_count", "evt-2"),
        ("KL123", "01HB", "clicked_count", "evt-2"),
    ]
    assert result.events[0].occurred_at.isoformat() == "2026-02-01T09:30:00+00:00"


def test_flat_event_uses_root_fields():
    result = extract_email_stats(
        {"event": "Bounced Email", "account_id": "KL9", "campaign": {"id": "01HX"}, "uuid": "u-1"}
    )
    assert [(e.account_id, e.campaign_id, e.column, e.event_id) for e in result.events] == [
        ("KL9", "01HX", "bounced_count", "u-1")
    ]


def test_skip_reasons():
    result = extract_email_stats(
        {
            "events": [
                {"event": "Placed Order", "account_id": "KL1", "campaign_id": "c1"},
                {"event": "Opened Email", "campaign_id": "c1"},
                {"event": "Opened Email", "account_id": "KL1"},
            ]
        }
    )
    assert result.events == []
    assert [s.reason for s in result.skipped] == ["unsupported-event", "no-account-id", "no-campaign-id"]


def test_non_object_payload_is_malformed():
    with pytest.raises(MalformedPayload):
        extract_email_stats(["not", "an", "object"])


def test_hmac_signature_over_body_and_timestamp():
    webhook = KlaviyoWebhook("klaviyo-secret")
    body = b'{"event":"Opened Email"}'
    headers = {"Klaviyo-Timestamp": "1767225600"}
    signature = _sign("klaviyo-secret", body, "1767225600")

    assert webhook.verify_signature(body, signature, headers) is True
    assert webhook.verify_signature(body, signature.upper(), headers) is True
    assert webhook.verify_signature(body, signature, {"Klaviyo-Timestamp": "1767225601"}) is False
    assert webhook.verify_signature(body, _sign("klaviyo-secret", body), {}) is True
    assert webhook.verify_signature(body, None, headers) is False


def test_unconfigured_secret_rejects_everything():
    body = b"{}"
    assert KlaviyoWebhook(None).verify_signature(body, _sign("", body), {}) is False
