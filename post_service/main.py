import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from common.config import IMAGE_SERVICE_BASE_URL, POST_SERVICE_PORT, TEMPORARY_UPLOADS_PATH
from common.errors import AppError
from common.logging_setup import setup_logging
from common.queue import MessageQueue, RabbitMQClient
from post_service import routes
from post_service.db import PostStore
from post_service.posts import PostService
from post_service.results import ImageResultHandler, ResultConsumer

logger = logging.getLogger(__name__)


def create_app(
    store: Optional[PostStore] = None,
    publisher: Optional[MessageQueue] = None,
    result_queue: Optional[MessageQueue] = None,
    uploads_dir: Path = TEMPORARY_UPLOADS_PATH,
    image_base_url: str = IMAGE_SERVICE_BASE_URL,
    consume_results: bool = True,
) -> FastAPI:
    """Composition root of the post service.

    Publishing and consuming use separate queue clients: the consumer owns its
    connection on a background thread, request threads share the publisher.
    """
    store = store or PostStore()
    publisher = publisher or RabbitMQClient()
    result_queue = result_queue or RabbitMQClient()
    consumer = ResultConsumer(result_queue, ImageResultHandler(store, image_base_url))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Any UpstreamUnavailable here aborts startup
        store.init_db()
        publisher.connect()
        if consume_results:
            result_queue.connect()
            consumer.start()
        yield
        if consume_results:
            consumer.stop()
        publisher.close()
        result_queue.close()

    app = FastAPI(
        title="Post Service",
        description="Creates posts and attaches their asynchronously processed images",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.post_service = PostService(store, publisher, uploads_dir)
    app.state.result_handler = consumer.handler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Location"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("[%s %s] %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": exc.message, "status": exc.status_code}},
        )

    app.include_router(routes.router)

    @app.get("/health")
    def health_check():
        return {"status": "UP", "service": "Post Service"}

    return app


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=POST_SERVICE_PORT)
