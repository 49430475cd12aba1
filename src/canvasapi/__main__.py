import logging
import os

import uvicorn


def main() -> int:
    host = os.getenv("CANVASAPI_HOST", "0.0.0.0")
    port = int(os.getenv("CANVASAPI_PORT", os.getenv("PORT", "8000")))
    log_level = os.getenv("CANVASAPI_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("canvasapi.app:app", host=host, port=port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
