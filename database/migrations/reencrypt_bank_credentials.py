#!/usr/bin/env python3
"""
Re-encrypt stored bank credentials under the active vault key.

Run after adding a new key to CREDENTIAL_ENCRYPTION_KEYS and pointing
CREDENTIAL_ACTIVE_KEY_ID at it. Old keys must stay configured until this
has completed.
"""
from sqlalchemy import text

CREDENTIAL_COLUMNS = ("encrypted_access_token", "encrypted_refresh_token")


def reencrypt_credentials(conn, vault) -> int:
    """Rotate every sealed credential not yet under the active key. Returns rows updated."""
    result = conn.execute(text(
        "SELECT id, encrypted_access_token, encrypted_refresh_token FROM bank_connections"
    ))
    rows = result.fetchall()

    print(f"Found {len(rows)} bank connections to check")

    updated = 0
    for row in rows:
        changes = {}
        for column, value in zip(CREDENTIAL_COLUMNS, row[1:]):
            if value and vault.needs_rotation(value):
                changes[column] = vault.rotate(value)

        if changes:
            assignments = ", ".join(f"{column} = :{column}" for column in changes)
            conn.execute(
                text(f"UPDATE bank_connections SET {assignments}, version = version + 1 WHERE id = :id"),
                dict(changes, id=row[0])
            )
            print(f"Re-encrypted {', '.join(changes)} for connection {row[0]}")
            updated += 1

    return updated


if __name__ == "__main__":
    from banklink.config import get_settings
    from banklink.database import engine
    from banklink.app.bank_integration.encryption import CredentialVault

    vault = CredentialVault.from_settings(get_settings())

    with engine.connect() as conn:
        count = reencrypt_credentials(conn, vault)
        conn.commit()

    print(f"Re-encryption complete! {count} connection(s) updated under key '{vault.active_key_id}'")
