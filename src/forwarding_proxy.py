"""
HLS-aware forwarding proxy.

Fetches a remote resource on behalf of a browser, rewrites HLS playlists so
that every segment and key is requested through the proxy as well, and relays
everything else byte for byte (including partial content for seeking).
"""

import asyncio
import httpx
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional
from urllib.parse import unquote, urlparse
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from config import settings
from playlist_rewriter import PlaylistRewriter

logger = logging.getLogger(__name__)

# Content types that identify an HLS playlist. Matched case-insensitively by
# substring: real-world origins append parameters, change case and mix the
# vendor and legacy names.
PLAYLIST_CONTENT_TYPES = (
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
)

# Origin headers copied onto relayed (non-rewritten) responses
PASSTHROUGH_HEADERS = (
    "Content-Type",
    "Content-Length",
    "Content-Range",
    "Content-Encoding",
    "Accept-Ranges",
    "Last-Modified",
)

CORS_ALLOW_METHODS = "GET, HEAD, OPTIONS"
CORS_ALLOW_HEADERS = "Range, Content-Type, Origin, Accept"
CORS_EXPOSE_HEADERS = "Content-Length, Content-Range, Content-Type, Accept-Ranges"


class ProxyError(Exception):
    """Base class for failures the proxy reports instead of an origin response"""
    status_code = 500


class InvalidTargetURLError(ProxyError):
    status_code = 400


class UpstreamTimeoutError(ProxyError):
    status_code = 504


class UpstreamConnectionError(ProxyError):
    status_code = 502


class UpstreamStatusError(ProxyError):
    """Origin answered with a non-2xx status where a body was required"""
    status_code = 502

    def __init__(self, message: str, origin_status: int):
        super().__init__(message)
        self.origin_status = origin_status


@dataclass
class ProxyRequest:
    target_url: str
    method: str = "GET"
    range_header: Optional[str] = None
    # Origin header of the browser page, used for allow-listed CORS
    client_origin: Optional[str] = None


def validate_target_url(raw_url: Optional[str]) -> str:
    """
    Validate the ``url`` query parameter and return the absolute target URL.

    The framework already percent-decodes query parameters once; values that
    still do not start with a scheme are decoded a second time to accept
    double-encoded links.
    """
    if raw_url is None or not raw_url.strip():
        raise InvalidTargetURLError('Missing "url" query parameter')

    target_url = raw_url.strip()
    if not target_url.lower().startswith(("http://", "https://")):
        try:
            target_url = unquote(target_url, errors="strict")
        except UnicodeDecodeError:
            raise InvalidTargetURLError(
                'Malformed "url" query parameter: not percent-decodable')

    try:
        parsed = urlparse(target_url)
        # urlparse defers port parsing; httpx rejects what it cannot send
        parsed.port
        httpx.URL(target_url)
    except (ValueError, httpx.InvalidURL) as e:
        raise InvalidTargetURLError(f'Malformed "url" query parameter: {e}')

    if parsed.scheme.lower() not in ("http", "https"):
        raise InvalidTargetURLError(
            "Invalid protocol. Only HTTP and HTTPS URLs are allowed.")

    if not parsed.netloc or not parsed.hostname:
        raise InvalidTargetURLError("URL must have a valid host")

    return target_url


def utf8_content_type(content_type: str) -> str:
    """Replace any charset parameter, since rewritten playlists are sent as UTF-8"""
    params = [
        param.strip() for param in content_type.split(";")[1:]
        if param.strip() and not param.strip().lower().startswith("charset=")
    ]
    return "; ".join([content_type.split(";")[0].strip(), *params, "charset=utf-8"])


def is_playlist_content_type(content_type: Optional[str]) -> bool:
    """Check whether an origin Content-Type denotes an HLS playlist"""
    if not content_type:
        return False
    content_type = content_type.lower()
    return any(playlist_type in content_type for playlist_type in PLAYLIST_CONTENT_TYPES)


def build_origin_headers(
    target_url: str,
    range_header: Optional[str] = None,
    user_agent: Optional[str] = None,
    send_referer: Optional[bool] = None,
) -> Dict[str, str]:
    """Build the outbound request headers for an origin fetch"""
    headers = {
        'User-Agent': user_agent or settings.DEFAULT_USER_AGENT,
        'Accept': '*/*',
        # Keep bodies byte-identical so Content-Length/Content-Range stay valid
        'Accept-Encoding': 'identity',
    }

    if send_referer if send_referer is not None else settings.SEND_REFERER:
        parsed = urlparse(target_url)
        headers['Referer'] = f"{parsed.scheme}://{parsed.netloc}/"

    if range_header:
        headers['Range'] = range_header

    return headers


def cors_headers(client_origin: Optional[str] = None) -> Dict[str, str]:
    """CORS headers attached to every proxy response, errors included"""
    headers = {
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Expose-Headers": CORS_EXPOSE_HEADERS,
    }

    allowed = settings.CORS_ALLOW_ORIGINS
    if "*" in allowed:
        headers["Access-Control-Allow-Origin"] = "*"
    elif client_origin and client_origin in allowed:
        headers["Access-Control-Allow-Origin"] = client_origin
        headers["Vary"] = "Origin"

    return headers


class ForwardingProxy:
    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        fetch_timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        send_referer: Optional[bool] = None,
        chunk_size: Optional[int] = None,
    ):
        self._fetch_timeout = fetch_timeout
        self.user_agent = user_agent
        self.send_referer = send_referer
        self.chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE

        # One pooled client per process. The overall origin response timeout
        # is enforced separately in open_origin().
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=self.fetch_timeout,
                read=settings.READ_TIMEOUT,
                write=settings.READ_TIMEOUT,
                pool=10.0
            ),
            follow_redirects=True,
            max_redirects=10,
            limits=httpx.Limits(
                max_keepalive_connections=settings.MAX_KEEPALIVE_CONNECTIONS,
                max_connections=settings.MAX_CONNECTIONS,
                keepalive_expiry=30.0
            ),
            transport=transport
        )

    @property
    def fetch_timeout(self) -> float:
        if self._fetch_timeout is not None:
            return self._fetch_timeout
        return settings.FETCH_TIMEOUT

    async def aclose(self):
        await self.http_client.aclose()

    async def open_origin(self, request: ProxyRequest) -> httpx.Response:
        """
        Send the request to the origin and return the response with its body
        still unread.

        The send runs under asyncio.wait_for: when the timer fires the fetch
        task is cancelled, which tears down the pending connection, and the
        resulting TimeoutError is reported as UpstreamTimeoutError. Any other
        transport failure becomes UpstreamConnectionError. Nothing is retried.
        """
        headers = build_origin_headers(
            request.target_url,
            request.range_header,
            user_agent=self.user_agent,
            send_referer=self.send_referer,
        )
        if request.range_header:
            logger.info(f"Passing Range header: {request.range_header}")

        timeout = self.fetch_timeout
        try:
            outbound = self.http_client.build_request(
                request.method, request.target_url, headers=headers)
            return await asyncio.wait_for(
                self.http_client.send(outbound, stream=True),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Fetch timeout triggered for {request.target_url} after {timeout}s")
            raise UpstreamTimeoutError(
                f"Gateway Timeout: origin server did not respond within {timeout} seconds")
        except httpx.TimeoutException as e:
            logger.warning(f"Origin timed out for {request.target_url}: {e}")
            raise UpstreamTimeoutError(
                f"Gateway Timeout: origin server did not respond within {timeout} seconds")
        except httpx.HTTPError as e:
            logger.error(
                f"Error fetching {request.target_url} from origin: {type(e).__name__}: {e}")
            raise UpstreamConnectionError(
                f"Bad Gateway: error fetching from origin server. {type(e).__name__}: {e}")

    async def read_text(self, response: httpx.Response) -> str:
        """Read a whole origin body as text, bounded by the fetch timeout, then close it"""
        try:
            await asyncio.wait_for(response.aread(), timeout=self.fetch_timeout)
            return response.text
        except asyncio.TimeoutError:
            logger.warning(f"Timed out reading body from {response.request.url}")
            raise UpstreamTimeoutError(
                "Gateway Timeout: origin server did not send the body in time")
        except httpx.TimeoutException as e:
            logger.warning(f"Timed out reading body from {response.request.url}: {e}")
            raise UpstreamTimeoutError(
                "Gateway Timeout: origin server did not send the body in time")
        except httpx.HTTPError as e:
            logger.error(f"Error reading body from {response.request.url}: {e}")
            raise UpstreamConnectionError(
                f"Bad Gateway: error reading from origin server. {type(e).__name__}: {e}")
        finally:
            await response.aclose()

    async def handle(self, request: ProxyRequest, proxy_endpoint: str) -> Response:
        """
        Proxy one request: fetch the origin, then rewrite a playlist or relay
        the body untouched.

        Raises ProxyError subclasses for failures on the proxy side; origin
        error statuses are relayed as responses, not raised.
        """
        logger.info(f"Proxying {request.method} request for: {request.target_url}")
        response = await self.open_origin(request)

        content_type = response.headers.get('content-type')

        if not response.is_success:
            logger.warning(
                f"Proxy target fetch failed for {request.target_url} with status: {response.status_code} {response.reason_phrase}")
            return self._relay_response(response, request)

        if is_playlist_content_type(content_type):
            if request.method.upper() == "HEAD":
                # Rewritten size is unknown without the body
                return self._relay_response(response, request, drop_content_length=True)

            logger.info(
                f"Detected playlist content type for {request.target_url}. Rewriting URLs inside.")
            playlist_text = await self.read_text(response)
            # Redirects change the base that relative references resolve against
            base_url = str(response.url) if response.url else request.target_url
            rewritten = PlaylistRewriter(base_url, proxy_endpoint).rewrite(playlist_text)

            headers = cors_headers(request.client_origin)
            headers["Content-Type"] = utf8_content_type(content_type)
            headers["Cache-Control"] = "no-cache"
            return Response(
                content=rewritten,
                status_code=response.status_code,
                headers=headers
            )

        logger.info(
            f"Streaming non-playlist content ({content_type or 'unknown type'}) for {request.target_url}")
        return self._relay_response(response, request)

    def _relay_response(
        self,
        response: httpx.Response,
        request: ProxyRequest,
        drop_content_length: bool = False
    ) -> StreamingResponse:
        """Stream the origin body back unmodified with its status and framing headers"""
        headers = cors_headers(request.client_origin)
        for name in PASSTHROUGH_HEADERS:
            if drop_content_length and name == "Content-Length":
                continue
            value = response.headers.get(name)
            if value is not None:
                headers[name] = value

        if response.headers.get('content-range'):
            logger.info(
                f"Provider Content-Range: {response.headers.get('content-range')}")

        return StreamingResponse(
            self._iter_origin_body(response, request.target_url),
            status_code=response.status_code,
            headers=headers,
            background=BackgroundTask(response.aclose)
        )

    async def _iter_origin_body(self, response: httpx.Response, target_url: str) -> AsyncIterator[bytes]:
        bytes_served = 0
        try:
            async for chunk in response.aiter_raw(chunk_size=self.chunk_size):
                bytes_served += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            logger.warning(
                f"Origin body interrupted for {target_url} after {bytes_served} bytes: {e}")
            raise
        finally:
            await response.aclose()
        logger.debug(f"Relayed {bytes_served} bytes for {target_url}")

    async def fetch_text(self, target_url: str) -> str:
        """Fetch a URL and return its body as text (used for channel listings)"""
        response = await self.open_origin(ProxyRequest(target_url=target_url))
        if not response.is_success:
            await response.aclose()
            raise UpstreamStatusError(
                f"Origin responded with HTTP {response.status_code} {response.reason_phrase}",
                origin_status=response.status_code
            )
        return await self.read_text(response)
