"""Request admission checks that run before any business logic.

The gate rejects only oversized requests outright. Everything else it finds
(spoofing-prone headers, scanner or bot user agents, origin mismatches) is
recorded on the request context and returned as reasons; a request is
blocked on suspicion only when the caller asks for it.
"""

import re
from collections.abc import Mapping
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

from wedly_shared.config import Settings, get_settings
from wedly_shared.models.context import RequestContext
from wedly_shared.models.errors import ErrorCategory, ErrorSeverity, create_error
from wedly_shared.utils.logging import get_logger

logger = get_logger(__name__)

SUSPICIOUS_HEADERS = ("x-forwarded-host", "x-original-url", "x-rewrite-url")

MIN_USER_AGENT_LENGTH = 10

BOT_USER_AGENT = re.compile(r"bot|crawler|spider|scraper|curl|wget|python|java", re.IGNORECASE)
SCANNER_USER_AGENT = re.compile(
    r"sqlmap|nikto|nessus|masscan|nmap|dirb|dirbuster|gobuster|wfuzz|burp", re.IGNORECASE
)

# More reasons than this block the request when blocking is enabled
BLOCK_REASON_THRESHOLD = 2

DEVELOPMENT_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3000",
)


class SecurityOptions(BaseModel):
    """Per-endpoint gate behavior."""

    webhook: bool = Field(default=False, description="Provider callbacks skip origin validation")
    require_origin: bool = False
    block_suspicious: bool = False
    max_request_bytes: int | None = Field(default=None, gt=0)


class SecurityCheckResult(BaseModel):
    suspicious: bool
    reasons: list[str] = Field(default_factory=list)


def origin_of(url: str) -> str | None:
    """``scheme://host[:port]`` of a URL, or None when it is not absolute."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def is_origin_allowed(origin: str | None, allowed: tuple[str, ...], allow_localhost: bool = False) -> bool:
    if not origin:
        return False
    return (
        origin in allowed
        or "*" in allowed
        or (allow_localhost and origin.startswith("http://localhost"))
    )


class SecurityGate:
    """Header and size checks for inbound requests.

    Usage:
        gate = SecurityGate()
        result = gate.check(request.headers, context, SecurityOptions(webhook=True))
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    @property
    def allowed_origins(self) -> tuple[str, ...]:
        """Browser origins allowed to call state-changing API endpoints."""
        configured = tuple(self._settings.allowed_origins)
        if self._settings.is_production:
            return configured or (self._settings.app_base_url.rstrip("/"),)
        return configured + DEVELOPMENT_ORIGINS + (self._settings.app_base_url.rstrip("/"),)

    def enforce_size(self, size: int, context: RequestContext | None = None, limit: int | None = None) -> None:
        """Reject a body larger than the configured limit.

        Raises:
            AppError: VALIDATION/MEDIUM/413
        """
        max_bytes = limit or self._settings.max_request_bytes
        if size > max_bytes:
            raise create_error(
                f"Request size too large: {size} bytes (max: {max_bytes})",
                ErrorCategory.VALIDATION,
                ErrorSeverity.MEDIUM,
                413,
                "Request is too large.",
                context={"size": size, "max_request_bytes": max_bytes},
            )

    def _check_declared_size(self, headers: Mapping[str, str], limit: int | None) -> None:
        declared = headers.get("content-length")
        if declared is None:
            return
        try:
            size = int(declared)
        except ValueError:
            raise create_error(
                f"Invalid content-length header: {declared!r}",
                ErrorCategory.VALIDATION,
                ErrorSeverity.MEDIUM,
                400,
                "Invalid request.",
            ) from None
        self.enforce_size(size, limit=limit)

    def _origin_valid(self, headers: Mapping[str, str]) -> bool:
        allowed = self.allowed_origins
        allow_localhost = not self._settings.is_production
        if is_origin_allowed(headers.get("origin"), allowed, allow_localhost):
            return True
        referer = headers.get("referer")
        if referer:
            return is_origin_allowed(origin_of(referer), allowed, allow_localhost)
        return False

    def detect_suspicious(self, headers: Mapping[str, str]) -> list[str]:
        """Heuristic reasons a request looks automated or spoofed."""
        reasons: list[str] = []
        user_agent = headers.get("user-agent") or ""

        for header in SUSPICIOUS_HEADERS:
            if headers.get(header):
                reasons.append(f"Suspicious header detected: {header}")

        if len(user_agent) < MIN_USER_AGENT_LENGTH:
            reasons.append("Missing or suspicious user agent")
        if SCANNER_USER_AGENT.search(user_agent):
            reasons.append("Security scanner user agent detected")
        elif BOT_USER_AGENT.search(user_agent):
            reasons.append("Bot-like user agent detected")

        origin = headers.get("origin")
        referer = headers.get("referer")
        if origin and referer:
            origin_host = urlsplit(origin).netloc
            referer_host = urlsplit(referer).netloc
            if not origin_host or not referer_host:
                reasons.append("Invalid origin or referer format")
            elif origin_host != referer_host:
                reasons.append("Origin and referer mismatch")

        return reasons

    def check(
        self,
        headers: Mapping[str, str],
        context: RequestContext,
        options: SecurityOptions | None = None,
    ) -> SecurityCheckResult:
        """Run the admission checks for one request.

        Args:
            headers: Request headers (any case)
            context: Request context; annotated with the findings
            options: Endpoint behavior; defaults to a non-blocking API check

        Returns:
            SecurityCheckResult with every reason found

        Raises:
            AppError: VALIDATION when the declared size is too large or
                unparseable; AUTHORIZATION/HIGH/403 when blocking is enabled
                and the request is judged hostile
        """
        options = options or SecurityOptions()
        normalized = {key.lower(): value for key, value in headers.items()}

        self._check_declared_size(normalized, options.max_request_bytes)

        reasons = self.detect_suspicious(normalized)
        if options.require_origin and not options.webhook and not self._origin_valid(normalized):
            reasons.append("Invalid request origin")
            if options.block_suspicious:
                raise create_error(
                    "Invalid request origin",
                    ErrorCategory.AUTHORIZATION,
                    ErrorSeverity.HIGH,
                    403,
                    "Request origin is not allowed.",
                    context={"origin": normalized.get("origin"), "referer": normalized.get("referer")},
                )

        result = SecurityCheckResult(suspicious=bool(reasons), reasons=reasons)
        if not reasons:
            return result

        logger.warning(
            "Suspicious request on %s: %s",
            context.endpoint,
            "; ".join(reasons),
            extra=context.log_fields(),
        )
        context.add(security_reasons=reasons)

        if options.block_suspicious and len(reasons) > BLOCK_REASON_THRESHOLD:
            raise create_error(
                "Request blocked due to suspicious activity",
                ErrorCategory.AUTHORIZATION,
                ErrorSeverity.HIGH,
                403,
                "Request blocked.",
                context={"reasons": reasons},
            )
        return result
