#!/usr/bin/env python3
"""
Report which ESP secrets are configured. Never prints secret values.

Exits non-zero when a secret the running service needs is missing.
Run from project root: python scripts/secret_health.py
"""

import os
import sys

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from esp_integration.config import Settings


def secret_report(app_settings: Settings) -> dict[str, bool]:
    return {
        "ESP_TOKEN_SECRET": bool(app_settings.esp_token_secret),
        "ESP_TOKEN_SECRET_PREVIOUS": bool(app_settings.esp_token_secret_previous),
        "ESP_OAUTH_STATE_SECRET": bool(app_settings.esp_oauth_state_secret),
        "INTERNAL_API_KEY": bool(app_settings.internal_api_key),
        "GHL_CLIENT_SECRET": bool(app_settings.ghl_client_secret),
        "GHL_WEBHOOK_PUBLIC_KEY": bool(app_settings.ghl_webhook_public_key),
        "GHL_AGENCY_TOKEN": bool(app_settings.ghl_agency_token),
        "KLAVIYO_WEBHOOK_SECRET": bool(app_settings.klaviyo_webhook_secret),
    }


REQUIRED = ("ESP_TOKEN_SECRET", "INTERNAL_API_KEY")


def main() -> int:
    app_settings = Settings()
    report = secret_report(app_settings)
    for name, present in report.items():
        print(f"  {name}: {'set' if present else 'missing'}")

    if report["ESP_TOKEN_SECRET_PREVIOUS"]:
        print("\nA previous token secret is still configured; run scripts/reencrypt_credentials.py then remove it.")
    if not report["ESP_OAUTH_STATE_SECRET"] and report["ESP_TOKEN_SECRET"]:
        print("\nOAuth state is signed with ESP_TOKEN_SECRET until ESP_OAUTH_STATE_SECRET is set.")
    if app_settings.ghl_webhook_signature_mode != "enforce":
        print(f"\nWarning: GHL_WEBHOOK_SIGNATURE_MODE is {app_settings.ghl_webhook_signature_mode!r}")
    if app_settings.ghl_oauth_mode != "legacy":
        print(f"\nGHL_OAUTH_MODE is {app_settings.ghl_oauth_mode!r}; linked accounts use minted location tokens.")

    missing = [name for name in REQUIRED if not report[name]]
    if missing:
        print(f"\nError: missing required secrets: {', '.join(missing)}")
        return 1
    print("\nOK")
    return 0


if __name__ == "__main__":
    sys.exit(main())
