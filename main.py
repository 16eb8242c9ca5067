"""
Silene - main entry point

Initializes all modules, wires collaborators, starts the server.
One file to understand how everything connects.

Usage:
    python main.py              # Start Silene
"""

import os
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    import re as _re
    _PATTERN = _re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
                if self._PATTERN.search(formatted):
                    record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                    record.args = None
            except Exception:
                pass
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("silene.main")

DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
DATA_DIR.mkdir(parents=True, exist_ok=True)


# ============================================================
# MODULE IMPORTS
# ============================================================

from engine.constitution import DEFAULT_CHAIN, DEFAULT_SOCIAL_BENEFICIARY_WALLET
from engine.chain import DeathCertificateRegistry, Web3Ledger
from engine.adapters.kitepass_adapter import KitepassVault
from engine.intent import IntentVerifier
from engine.lifecycle import WillService
from engine.limiter import SpendingLimiter
from engine.llm import DEFAULT_BASE_URL, DEFAULT_MODEL, LLMClient
from engine.reallocation import IntentQuantifier, ReallocationEngine
from engine.signature import SignatureVerifier
from engine.store import JsonStore
from social.source import get_social_source
from api.server import create_app


# ============================================================
# GLOBALS (singleton instances)
# ============================================================

CHAIN = os.getenv("CHAIN", DEFAULT_CHAIN)

store = JsonStore(str(DATA_DIR / "silene_store.json"))
ledger = Web3Ledger()
limiter = SpendingLimiter()

llm = LLMClient(
    api_key=os.getenv("LLM_API_KEY", ""),
    base_url=os.getenv("LLM_BASE_URL", DEFAULT_BASE_URL),
    model=os.getenv("LLM_MODEL", DEFAULT_MODEL),
)
social_source = get_social_source(
    mode=os.getenv("SOCIAL_MODE", "mock"),
    bearer_token=os.getenv("TWITTER_BEARER_TOKEN", ""),
    rapidapi_key=os.getenv("RAPIDAPI_KEY", ""),
    user_id=os.getenv("TWITTER_USER_ID", ""),
)
reallocation_engine = ReallocationEngine(
    IntentQuantifier(llm),
    social_wallet=os.getenv("SOCIAL_BENEFICIARY_WALLET", DEFAULT_SOCIAL_BENEFICIARY_WALLET),
)
intent_verifier = IntentVerifier(llm, social_source, reallocation_engine)

_certificate_address = os.getenv("DEATH_CERTIFICATE_ADDRESS", "")
will_service = WillService(
    store=store,
    verifier=SignatureVerifier(),
    limiter=limiter,
    ledger=ledger,
    vault_provider=KitepassVault(ledger),
    attestation=DeathCertificateRegistry(ledger, _certificate_address) if _certificate_address else None,
    settlement_token=os.getenv("SETTLEMENT_TOKEN") or None,
)


# ============================================================
# LIFESPAN
# ============================================================

@asynccontextmanager
async def lifespan(app):
    rpc_override = os.getenv(f"{CHAIN.upper()}_RPC_URL") or os.getenv("KITE_RPC_URL") or None
    ledger.initialize(
        os.getenv("CUSTODY_PRIVATE_KEY", ""),
        chain=CHAIN,
        rpc_override=rpc_override,
        token_address=os.getenv("SETTLEMENT_TOKEN") or None,
    )
    if not ledger.initialized:
        logger.warning("Ledger not initialized — /will/execute will return 503")
    if not llm.configured:
        logger.warning("LLM_API_KEY not set — intent analysis returns neutral results")
    if not _certificate_address:
        logger.warning("DEATH_CERTIFICATE_ADDRESS not set — attestation will be skipped")
    logger.info(f"Silene up | chain={CHAIN} | store={store.path}")
    yield
    logger.info("Goodbye.")


def create_silene_app():
    """Create the fully wired FastAPI app."""
    app = create_app(
        will_service=will_service,
        store=store,
        reallocation_engine=reallocation_engine,
        intent_verifier=intent_verifier,
        ledger=ledger,
    )
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_silene_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3001"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
