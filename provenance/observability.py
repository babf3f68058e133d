"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured logging with request and wallet context
- Request logging middleware
- Ledger and login counters
- Health checks

Usage:
    from provenance.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Product created", product_id=product_id, record_ref=ref)

Keyword arguments become fields on the log record. The JSON formatter
emits them as top-level keys; the text formatter appends them as k=v.
"""

import json
import logging
import sys
import threading
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from .config import LoggingConfig

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
wallet_identity_var: ContextVar[str] = ContextVar("wallet_identity", default="")

# Attributes every LogRecord carries; anything else came in as a field
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


def _context() -> Dict[str, str]:
    context = {}
    if request_id_var.get():
        context["request_id"] = request_id_var.get()
    if wallet_identity_var.get():
        context["wallet_identity"] = wallet_identity_var.get()
    return context


# ============================================================
# LOGGING
# ============================================================

class StructuredFormatter(logging.Formatter):
    """One JSON object per line. Non-JSON field values are stringified."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(),
            **_fields(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        context = _context()
        prefix = f"[{context['request_id']}] " if "request_id" in context else ""
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        extras = " ".join(f"{k}={v}" for k, v in _fields(record).items())

        line = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"
        if extras:
            line = f"{line} | {extras}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that turns keyword arguments into record fields."""

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install a single stdout handler on the root logger."""
    config = config or LoggingConfig.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if config.json else TextFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(config.level)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a request ID (honouring X-Request-ID) and,
    when a valid bearer credential is presented, the caller's wallet.
    Logs the outcome with timing.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request_id_token = request_id_var.set(request_id)
        wallet_token = wallet_identity_var.set(_peek_wallet(request) or "")

        logger = get_logger("provenance.request")
        route = f"{request.method} {request.url.path}"
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"{route} -> 500", duration_ms=_elapsed_ms(start))
            get_metrics().record_request(success=False)
            raise
        else:
            logger.log(
                logging.INFO if response.status_code < 400 else logging.WARNING,
                f"{route} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=_elapsed_ms(start),
            )
            get_metrics().record_request(success=response.status_code < 500)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            wallet_identity_var.reset(wallet_token)
            request_id_var.reset(request_id_token)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def _peek_wallet(request: Request) -> Optional[str]:
    """Wallet behind the bearer credential, for log context only."""
    header = request.headers.get("Authorization", "")
    verifier = getattr(request.app.state, "verifier", None)
    if verifier is None or not header.startswith("Bearer "):
        return None

    from .core.identity import IdentityError

    try:
        return verifier.validate(header[len("Bearer "):])
    except IdentityError:
        return None


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricsCollector:
    """
    Process-local counters.

    Appends happen on many threads at once, so every update takes the lock.
    """

    records_appended: int = 0
    appends_rejected: int = 0
    login_attempts: int = 0
    login_failures: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Last 1000 append latencies
    append_latencies_ms: list = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self.records_appended += 1
            self.append_latencies_ms.append(latency_ms)
            del self.append_latencies_ms[:-1000]

    def record_rejection(self) -> None:
        with self._lock:
            self.appends_rejected += 1

    def record_login(self, success: bool) -> None:
        with self._lock:
            self.login_attempts += 1
            if not success:
                self.login_failures += 1

    def record_request(self, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            latencies = sorted(self.append_latencies_ms)
            summary = {
                "records_appended": self.records_appended,
                "appends_rejected": self.appends_rejected,
                "login_attempts": self.login_attempts,
                "login_failures": self.login_failures,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
            }

        for label, p in (("p50", 0.5), ("p99", 0.99)):
            summary[f"append_latency_{label}_ms"] = (
                latencies[min(int(len(latencies) * p), len(latencies) - 1)]
                if latencies else None
            )
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(ledger=None, verifier=None) -> HealthStatus:
    """
    Liveness plus, when given, auth status and a full chain verification.

    Disabled auth is reported as degraded and does not fail the check:
    reads still work without it.
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if verifier is not None:
        checks["auth"] = {
            "status": "healthy" if verifier.enabled else "degraded",
            "enabled": verifier.enabled,
            "issuer": verifier.issuer,
        }

    if ledger is not None:
        try:
            valid = ledger.verify_chain_integrity()
        except Exception as e:
            get_logger(__name__).exception("Chain verification raised")
            checks["chain_integrity"] = {"status": "unhealthy", "error": str(e)}
        else:
            checks["chain_integrity"] = {
                "status": "healthy" if valid else "unhealthy",
                "valid": valid,
                "product_count": ledger.product_count,
                "record_count": ledger.record_count,
            }

    healthy = all(check["status"] != "unhealthy" for check in checks.values())
    return HealthStatus(healthy=healthy, checks=checks, duration_ms=_elapsed_ms(start))
