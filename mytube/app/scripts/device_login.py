from __future__ import annotations

import argparse
import threading

from mytube.app.config import FatalConfigError, load_settings
from mytube.app.models.auth import DeviceChallenge, LoginCancelledError
from mytube.app.repositories.credential_store import CredentialStore
from mytube.app.services.oauth_device_flow import DeviceFlowError, GoogleDeviceFlow


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Sign MyTube in to YouTube with an OAuth device code.",
    )
    parser.add_argument(
        "--scope",
        type=str,
        default=None,
        help="Override the OAuth scopes requested (space separated).",
    )
    return parser.parse_args(argv)


def print_challenge(challenge: DeviceChallenge) -> None:
    print(f"Open {challenge.verification_url} and enter the code: {challenge.user_code}")
    print("Waiting for approval...")


def run_device_login(
    flow: GoogleDeviceFlow,
    store: CredentialStore,
    *,
    cancel_event: threading.Event | None = None,
) -> int:
    try:
        credential = flow.run(
            on_pending=print_challenge,
            cancel_event=cancel_event or threading.Event(),
        )
    except FatalConfigError as exc:
        print(f"Configuration error: {exc}")
        return 2
    except (DeviceFlowError, LoginCancelledError) as exc:
        print(f"Sign-in failed: {exc}")
        return 1

    store.save(credential)
    print(f"OAuth success. Token path: {store.oauth_token_path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings()
    if args.scope:
        settings = settings.model_copy(update={"oauth_scope": args.scope})

    store = CredentialStore(
        cookie_path=settings.credential_path,
        oauth_token_path=settings.oauth_token_path,
    )
    return run_device_login(GoogleDeviceFlow.from_settings(settings), store)


if __name__ == "__main__":
    raise SystemExit(main())
