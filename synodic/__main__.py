from __future__ import annotations

import uvicorn

from synodic.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "synodic.app:app",
        host=settings.host,
        port=settings.port,
        log_level="info",
        proxy_headers=settings.trust_proxy_headers,
    )


if __name__ == "__main__":
    main()
