#!/usr/bin/env python3
"""
Re-encrypt stored ESP credentials under the current ESP_TOKEN_SECRET.

Rows encrypted under ESP_TOKEN_SECRET_PREVIOUS are decrypted with it and
rewritten with the primary secret. Run after rotating the secret:

    python scripts/reencrypt_credentials.py [--dry-run]
"""

import argparse
import os
import sys

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from esp_integration.config import Settings
from esp_integration.db import create_supabase_client
from esp_integration.domain.errors import VaultMisconfigured
from esp_integration.observability import configure_logging
from esp_integration.stores.connections import ConnectionStore
from esp_integration.vault import CredentialVault


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--dry-run", action="store_true", help="count rows without writing")
    args = parser.parse_args(argv)

    app_settings = Settings()
    configure_logging(app_settings.log_level)
    vault = CredentialVault(app_settings.token_secrets())
    try:
        vault.require_configured()
    except VaultMisconfigured as exc:
        print(f"Error: {exc}")
        return 1

    store = ConnectionStore(create_supabase_client(app_settings), vault)
    stats = store.reencrypt_all(dry_run=args.dry_run)

    mode = "Dry run" if stats.dry_run else "Re-encrypted"
    print(f"{mode}:")
    print(f"  OAuth connections: {stats.oauth_updated}/{stats.oauth_rows}")
    print(f"  API-key connections: {stats.api_key_updated}/{stats.api_key_rows}")
    print(f"  Provider credentials: {stats.provider_credential_updated}/{stats.provider_credential_rows}")
    if stats.failures:
        print(f"  Failures ({stats.failed}):")
        for failure in stats.failures:
            print(f"    {failure}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
