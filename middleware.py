import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from access_log import AccessLogBuffer
from background import BackgroundTaskQueue
from context import RequestContext
from errors import AuthenticationInvalid, GatewayError, internal_error_response
from key_store import ApiKeyStore
from schemas import AccessLogEntry, ApiKeyRecord
from security import extract_api_key, is_public_route
from timing import Stopwatch, utcnow

logger = logging.getLogger("gateway.auth")


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
}


class AccessControlMiddleware(BaseHTTPMiddleware):
    """
    Runs around every request:

    before  - authenticate the X-API-Key header, stamp the request context,
              queue the usage counter update
    after   - build one access log entry and hand it to the buffer
    """

    def __init__(
        self,
        app,
        *,
        key_store: ApiKeyStore,
        access_logs: AccessLogBuffer,
        tasks: BackgroundTaskQueue,
        enforce_allowed_ips: bool = False,
    ):
        super().__init__(app)
        self.key_store = key_store
        self.access_logs = access_logs
        self.tasks = tasks
        self.enforce_allowed_ips = enforce_allowed_ips

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.monotonic()
        ctx = RequestContext(initial_time=utcnow())
        request.state.context = ctx
        client_ip = request.client.host if request.client else "unknown"

        # --------------------------------------------------
        # Authentication
        # --------------------------------------------------

        if not is_public_route(request.url.path, request.method, client_ip):
            try:
                request.state.api_key = await self.authenticate(request, ctx, client_ip)
            except GatewayError as e:
                logger.info(f"{request.method} {request.url.path} from {client_ip} rejected: {e.message}")
                return self._finalize(e.to_response())
            except Exception:
                logger.exception(f"Authentication failed unexpectedly for {request.method} {request.url.path}")
                return self._finalize(internal_error_response())

        # --------------------------------------------------
        # Handler
        # --------------------------------------------------

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Unhandled error in {request.method} {request.url.path}")
            response = internal_error_response()

        # --------------------------------------------------
        # Access log (authenticated requests only)
        # --------------------------------------------------

        api_key = getattr(request.state, "api_key", None)
        if api_key is not None:
            elapsed_ms = int((time.monotonic() - start_time) * 1000)
            self.record_access(request, response, ctx, api_key, client_ip, elapsed_ms)

        return self._finalize(response)

    async def authenticate(self, request: Request, ctx: RequestContext, client_ip: str) -> ApiKeyRecord:
        token = extract_api_key(request)

        now = utcnow()
        stopwatch = Stopwatch()
        record = await self.key_store.find_by_token(
            token,
            now,
            client_ip=client_ip if self.enforce_allowed_ips else None,
        )
        ctx.validation_time_ms = stopwatch.elapsed_ms

        if record is None:
            raise AuthenticationInvalid()

        self.tasks.submit(self.key_store.increment_usage, token, now)
        return record

    def record_access(
        self,
        request: Request,
        response: Response,
        ctx: RequestContext,
        api_key: ApiKeyRecord,
        client_ip: str,
        elapsed_ms: int,
    ) -> None:
        """
        Response interceptor. Never raises into the response path.
        """
        try:
            entry = AccessLogEntry(
                timestamp=ctx.initial_time,
                api_key=api_key.key,
                endpoint=request.url.path,
                method=request.method,
                status_code=response.status_code,
                query_time_ms=ctx.query_time_ms,
                validation_time_ms=ctx.validation_time_ms,
                elapsed_time_ms=elapsed_ms,
                ip_address=client_ip,
                user_agent=request.headers.get("user-agent", ""),
                accessed_resources=list(ctx.accessed_resources),
            )
            self.access_logs.enqueue(entry)
        except Exception:
            logger.exception(f"Could not record access log for {request.method} {request.url.path}")

    @staticmethod
    def _finalize(response: Response) -> Response:
        for k, v in SECURITY_HEADERS.items():
            response.headers.setdefault(k, v)
        return response
