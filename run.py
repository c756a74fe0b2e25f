"""
Entrypoint - Server Launcher
Runs the FastAPI gateway with uvicorn.
"""
import uvicorn

from factory_sync.core.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "factory_sync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="info" if settings.debug else "warning",
        access_log=settings.debug
    )
