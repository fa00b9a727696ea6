import uvicorn

from app.core.config import settings
from observability import build_log_context, log_event


def main() -> None:
    log_event(
        "hdnode_starting",
        ctx=build_log_context(tool="main"),
        data={"host": settings.API_HOST, "port": settings.API_PORT},
    )
    uvicorn.run("app.api_server:app", host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    main()
