#!/usr/bin/env python3
"""Generate a random admin key for the chatrelay admin endpoints."""

import secrets


def main() -> None:
    admin_key = f"crl_admin_{secrets.token_urlsafe(32)}"

    print()
    print("chatrelay admin key")
    print()
    print(f"  {admin_key}")
    print()
    print("Set it in your environment:")
    print(f'  export CHATRELAY_AUTH__ADMIN_API_KEY="{admin_key}"')
    print()
    print("Or in chatrelay.yaml:")
    print("  auth:")
    print(f'    admin_api_key: "{admin_key}"')
    print()
    print("Call admin endpoints with: Authorization: Bearer <key>")


if __name__ == "__main__":
    main()
