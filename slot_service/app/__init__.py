from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


def _field_message(error):
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    return f"{location}: {error.get('msg')}" if location else error.get("msg")


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {
            "message": "Validation failed",
            "code": "VALIDATION_ERROR",
            "errors": [_field_message(error) for error in exc.errors()],
        }},
    )


def create_app() -> FastAPI:
    app = FastAPI(title="Slot Service")

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    from .routes import router as main_router
    app.include_router(main_router)

    return app
