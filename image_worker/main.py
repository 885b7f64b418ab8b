import re
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from common.config import IMAGE_SERVICE_PORT, PROCESSED_IMAGES_PREFIX
from common.logging_setup import setup_logging
from common.storage import ImageStorage, get_image_storage

# Names are always generated by the worker: uuid hex + extension.
_IMAGE_NAME = re.compile(r"^[0-9a-f]{32}\.[a-z0-9]{1,10}$")


def create_app(storage: Optional[ImageStorage] = None) -> FastAPI:
    app = FastAPI(title="Image Processing Service")
    app.state.storage = storage or get_image_storage()

    @app.get(PROCESSED_IMAGES_PREFIX + "/{name}")
    def get_processed_image(name: str):
        storage: ImageStorage = app.state.storage
        if not _IMAGE_NAME.match(name) or not storage.exists(name):
            raise HTTPException(status_code=404, detail="Image not found")
        try:
            path = storage.fetch(name)
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail="Image file missing")
        cleanup = BackgroundTask(path.unlink, missing_ok=True) if storage.fetch_is_temporary else None
        return FileResponse(path, background=cleanup)

    @app.get("/health")
    def health_check():
        return {"status": "UP", "service": "Image Processing Service"}

    return app


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=IMAGE_SERVICE_PORT)
