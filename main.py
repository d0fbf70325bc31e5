import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paysync.api import get_settings, get_store, router
from paysync.repositories import create_db_and_tables


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("paysync")

for variable in get_settings().missing_required():
    logger.warning("config_missing variable=%s", variable)
if not get_settings().webhook_key:
    logger.warning("webhook_verification_disabled reason=no_signing_key")
create_db_and_tables(get_store().engine)

app = FastAPI(title="paysync")
app.include_router(router)
app.include_router(router, prefix="/api", include_in_schema=False)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(part) for part in error["loc"][1:]) for error in exc.errors()} - {""})
    detail = f"missing or invalid fields: {', '.join(fields)}" if fields else "invalid request body"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": detail, "errors": jsonable_encoder(exc.errors())},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "3000")))
