import uvicorn

from config import settings


def main():
    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.RELOAD,
        # Honour X-Forwarded-* from reverse proxies
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


if __name__ == "__main__":
    main()
