#!/usr/bin/env python3
"""Emit deterministic SQL that registers a machine module credential."""

from __future__ import annotations

import argparse
import hashlib

KNOWN_SCOPES = ("jobs:run", "jobs:read", "evidence:write")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, module_id: str, api_key: str, scopes: list[str]) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    scope_array = ", ".join(_quote_sql(scope) for scope in sorted(set(scopes)))

    return f"""-- brandtrust module credential
-- Run against the service database; the plaintext key is not stored.

insert into module_credentials (module_id, key_hash, scopes, enabled)
values ({_quote_sql(module_id)}, {_quote_sql(key_hash)}, array[{scope_array}]::text[], true)
on conflict (module_id, key_hash) do update set scopes = excluded.scopes, enabled = true;
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a machine module credential.")
    parser.add_argument("--module-id", required=True, help="Value clients send in X-Module-Id")
    parser.add_argument("--api-key", required=True, help="Plaintext key clients send in X-API-Key")
    parser.add_argument(
        "--scope",
        action="append",
        choices=list(KNOWN_SCOPES),
        dest="scopes",
        help="Scope to grant; repeat for several",
    )
    args = parser.parse_args()

    print(render_sql(module_id=args.module_id, api_key=args.api_key, scopes=args.scopes or ["jobs:run"]))


if __name__ == "__main__":
    main()
