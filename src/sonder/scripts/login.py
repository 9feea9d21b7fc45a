"""
Interactive login for the sonder sync engine.

Prompts for the account email and password once, exchanges them for an
access/refresh token pair, and saves the tokens to ~/.sonder/session/
with owner-only permissions (0700 dir / 0600 file).

After login, the sync daemon and the local API restore the saved session;
the password is never stored on disk.

Usage:
    python -m sonder login
    python -m sonder.scripts.login   (direct invocation)

Re-run any time sync reports that authentication is required.
"""
import getpass
import sys

from supabase import create_client

from sonder.config import get_settings
from sonder.remote.auth import SessionStore


def run_login() -> None:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        print("Error: set SONDER_SUPABASE_URL and SONDER_SUPABASE_KEY first.")
        sys.exit(1)

    store = SessionStore(settings.session_dir)

    print("\nSonder login\n")
    print("Your password will NOT be saved to disk.")
    print(f"Session tokens will be stored in: {store.session_dir}\n")

    if store.has_session():
        print("An existing session was found.")
        overwrite = input("Overwrite it with a new login? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Login cancelled. Existing session unchanged.")
            sys.exit(0)

    email = input("Email: ").strip()
    if not email:
        print("Error: email cannot be empty.")
        sys.exit(1)

    password = getpass.getpass("Password: ")
    if not password:
        print("Error: password cannot be empty.")
        sys.exit(1)

    print("\nSigning in...")
    client = create_client(settings.supabase_url, settings.supabase_key)
    try:
        user_id = store.authenticate_and_save(client, email, password)
    except Exception as exc:
        print(f"\nSign-in failed: {exc}")
        print("Check your email and password and try again.")
        sys.exit(1)

    print(f"\nSigned in as {user_id}; session saved to {store.session_dir}")
    print("If sync later reports that authentication is required, re-run:  python -m sonder login\n")


if __name__ == "__main__":
    run_login()
