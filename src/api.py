from fastapi import FastAPI, HTTPException, Query, Response, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from contextlib import asynccontextmanager
import logging
from typing import List, Optional

from config import settings, VERSION
from models import (
    ChannelListResponse,
    FixedSubscription,
    ProxiedChannel,
    Subscription,
    SubscriptionCreateRequest,
)
from forwarding_proxy import (
    CORS_ALLOW_HEADERS,
    CORS_EXPOSE_HEADERS,
    ForwardingProxy,
    ProxyError,
    ProxyRequest,
    cors_headers,
    validate_target_url,
)
from playlist_rewriter import build_proxy_url, resolve_reference
from subscription_store import SubscriptionError, SubscriptionStore
from channel_parser import parse_channels

# Set up logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def detect_https_from_headers(request: Request) -> bool:
    """
    HTTPS detection from reverse proxy headers.

    Only trusts forwarded headers if the request came through a reverse proxy.
    If the client connects directly (no X-Forwarded-For), use the actual request scheme.
    """
    has_forwarded_for = request.headers.get("x-forwarded-for") is not None

    if not has_forwarded_for:
        return request.url.scheme == "https"

    # X-Forwarded-Proto (NGINX, Caddy, Traefik) and X-Forwarded-Scheme (NGINX Proxy Manager)
    for header in ("x-forwarded-proto", "x-forwarded-scheme"):
        value = request.headers.get(header)
        if value and value.split(",")[0].strip().lower() == "https":
            logger.debug(f"Detected HTTPS via {header}")
            return True

    # X-Forwarded-Ssl (Cloudflare, some load balancers), Front-End-Https (IIS, Azure)
    if request.headers.get("x-forwarded-ssl") == "on" or request.headers.get("front-end-https") == "on":
        return True

    # Forwarded header (RFC 7239)
    forwarded = request.headers.get("forwarded")
    if forwarded and "proto=https" in forwarded.lower():
        return True

    if request.headers.get("x-forwarded-port") == "443":
        return True

    return False


def get_proxy_endpoint(request: Request) -> str:
    """
    Externally visible URL of the proxy route, written into rewritten playlists.

    PUBLIC_URL wins when configured; otherwise the URL is rebuilt from the
    scheme and host the client used to reach us.
    """
    if settings.PUBLIC_URL:
        return f"{settings.PUBLIC_URL.rstrip('/')}{settings.PROXY_PATH}"

    scheme = "https" if detect_https_from_headers(request) else "http"
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    host = host.split(",")[0].strip()
    root_path = getattr(settings, 'ROOT_PATH', '')
    return f"{scheme}://{host}{root_path}{settings.PROXY_PATH}"


class NoContentPreflightCORSMiddleware(CORSMiddleware):
    """CORSMiddleware that answers successful preflights with 204 and no body"""

    def preflight_response(self, request_headers) -> Response:
        response = super().preflight_response(request_headers=request_headers)
        if response.status_code != 200:
            return response

        headers = {
            key: value for key, value in response.headers.items()
            if key.lower() not in ("content-length", "content-type")
        }
        if "access-control-allow-headers" not in headers:
            headers["access-control-allow-headers"] = CORS_ALLOW_HEADERS
        return Response(status_code=204, headers=headers)


# Global proxy and subscription store
forwarding_proxy = ForwardingProxy()
subscription_store = SubscriptionStore(settings.SUBSCRIPTIONS_FILE)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("⚡️ hls relay starting up...")
    try:
        subscription_store.initialize()
    except OSError as e:
        logger.error(f"FATAL: Error initializing data store: {e}")
        raise

    logger.info(f"Proxy endpoint: {settings.PROXY_PATH} (timeout {settings.FETCH_TIMEOUT}s)")
    logger.info(f"Allowed origins: {', '.join(settings.CORS_ALLOW_ORIGINS)}")
    logger.info(f"Subscriptions data file: {subscription_store.path}")

    yield

    # Shutdown
    logger.info("hls relay shutting down...")
    await forwarding_proxy.aclose()


app = FastAPI(
    title="hls relay",
    version=VERSION,
    description="HLS-aware forwarding proxy and M3U subscription service",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

app.add_middleware(
    NoContentPreflightCORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "HEAD", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=[header.strip() for header in CORS_EXPOSE_HEADERS.split(",")],
)


@app.get("/")
async def root():
    return {
        "status": "running",
        "message": "hls relay is running",
        "version": VERSION,
        "proxy_path": settings.PROXY_PATH,
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": VERSION}


# ============================================================================
# FORWARDING PROXY
# ============================================================================

@app.api_route(settings.PROXY_PATH, methods=["GET", "HEAD"])
async def proxy(
    request: Request,
    url: Optional[str] = Query(
        None, description="Percent-encoded absolute http(s) URL to fetch")
):
    """
    Fetch ``url`` on behalf of the browser.

    HLS playlists come back with every segment and key URI rewritten to this
    endpoint; any other content is streamed back untouched, Range requests included.
    """
    client_origin = request.headers.get("origin")
    try:
        target_url = validate_target_url(url)
        proxy_request = ProxyRequest(
            target_url=target_url,
            method=request.method,
            range_header=request.headers.get("range"),
            client_origin=client_origin,
        )
        return await forwarding_proxy.handle(proxy_request, get_proxy_endpoint(request))
    except ProxyError as e:
        if e.status_code == 400:
            logger.error(f"Invalid target URL received: {url!r}: {e}")
        raise HTTPException(
            status_code=e.status_code,
            detail=str(e),
            headers=cors_headers(client_origin)
        )
    except Exception as e:
        logger.error(f"Unexpected error proxying {url!r}: {type(e).__name__}: {e}")
        raise HTTPException(
            status_code=500,
            detail="Internal proxy error",
            headers=cors_headers(client_origin)
        )


@app.options(settings.PROXY_PATH)
async def proxy_preflight(request: Request):
    return Response(status_code=204, headers=cors_headers(request.headers.get("origin")))


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

@app.get("/api/subscriptions", response_model=List[Subscription])
def list_subscriptions():
    try:
        subscriptions = subscription_store.list()
    except (OSError, ValueError) as e:
        logger.error(f"Error reading subscriptions file: {e}")
        raise HTTPException(status_code=500, detail="Failed to list subscriptions")

    logger.info(f"Returning {len(subscriptions)} subscriptions.")
    return subscriptions


@app.post("/api/subscriptions", response_model=Subscription, status_code=201)
def add_subscription(request: SubscriptionCreateRequest):
    try:
        return subscription_store.add(request.url, name=request.name)
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except (OSError, ValueError) as e:
        logger.error(f"Error adding subscription: {e}")
        raise HTTPException(status_code=500, detail="Failed to add subscription")


@app.delete("/api/subscriptions/{subscription_id}", status_code=204)
def delete_subscription(subscription_id: str):
    try:
        subscription_store.remove(subscription_id)
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except (OSError, ValueError) as e:
        logger.error(f"Error deleting subscription {subscription_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete subscription")
    return Response(status_code=204)


@app.get("/api/subscriptions/{subscription_id}/channels", response_model=ChannelListResponse)
async def get_subscription_channels(subscription_id: str, request: Request):
    """Fetch a subscription's playlist and list its channels with proxied URLs"""
    try:
        subscription = await run_in_threadpool(subscription_store.get, subscription_id)
    except (OSError, ValueError) as e:
        logger.error(f"Error reading subscriptions file: {e}")
        raise HTTPException(status_code=500, detail="Failed to read subscriptions")

    if subscription is None:
        raise HTTPException(status_code=404, detail="Subscription not found")

    try:
        text = await forwarding_proxy.fetch_text(subscription.url)
    except ProxyError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    proxy_endpoint = get_proxy_endpoint(request)
    channels = []
    for channel in parse_channels(text):
        resolved = resolve_reference(channel.url, subscription.url)
        channels.append(ProxiedChannel(
            **channel.model_dump(),
            proxy_url=build_proxy_url(resolved, proxy_endpoint) if resolved else None
        ))

    logger.info(
        f"Loaded {len(channels)} channels for subscription {subscription_id} ({subscription.url})")
    return ChannelListResponse(
        subscription=subscription,
        count=len(channels),
        channels=channels
    )


@app.get("/api/fixed-subscriptions", response_model=List[FixedSubscription])
async def list_fixed_subscriptions():
    """Default subscriptions configured for this deployment"""
    return settings.FIXED_SUBSCRIPTIONS
