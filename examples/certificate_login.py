import asyncio
import contextlib
import os
import sys

# Add src to path for running directly
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from coreason_certflow.config import CertflowConfig
from coreason_certflow.credentials import load_credentials
from coreason_certflow.orchestrator import FlowOrchestratorAsync
from coreason_certflow.session import MemorySessionStore
from coreason_certflow.sinks import MemoryAuditSink


async def main() -> None:
    """
    Walks through the certificate-authenticated flow without a browser.
    Includes:
    - Credentials loaded once from the key/certificate paths in the environment
    - Login redirect with a session-bound state
    - A silent refresh attempt (no refresh token yet, so it is refused locally)
    """
    print(">>> Starting certificate login example")

    # Reads COREASON_CERTFLOW_TENANT_ID, _CLIENT_ID, _REDIRECT_URI, _PRIVATE_KEY_PATH, _PUBLIC_CERT_PATH
    config = CertflowConfig()
    credentials = load_credentials(config)
    audit = MemoryAuditSink()
    store = MemorySessionStore()

    async with FlowOrchestratorAsync(config, credentials, audit=audit) as flow:
        session = store.create()
        flow.begin_request(session)

        login = flow.login(session)
        print(f">>> Send the browser to:\n    {login.location}")

        refresh = await flow.refresh(session)
        print(f">>> Refresh before sign-in: HTTP {refresh.status_code} {refresh.body}")

        logout = flow.logout(session)
        print(f">>> Sign-out redirect: {logout.location}")

    print(f">>> Audit trail: {audit.entries}")


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
