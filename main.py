import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from config import CORS_ORIGINS, LOG_LEVEL
from errors import InflioError, KlapAPIError
from routers import clips, media, personas, projects, worker

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")

app = FastAPI(
    title="Inflio Clip Backend",
    description="Turns uploaded videos into social clips through the Klap API and tracks the jobs.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------------------------------------------------------------------------
# --- Error Responses ---
# --------------------------------------------------------------------------

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logging.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", [])[1:])
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(InflioError)
async def inflio_exception_handler(request: Request, exc: InflioError):
    if isinstance(exc, KlapAPIError):
        logging.error(f"Klap error on {request.url.path}: {exc}")
        return JSONResponse(status_code=502, content={"error": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

# --------------------------------------------------------------------------
# --- API Endpoints ---
# --------------------------------------------------------------------------

@app.get("/")
def read_root():
    return {"status": "🚀 Inflio clip backend is running!"}


app.include_router(projects.router)
app.include_router(clips.router)
app.include_router(worker.router)
app.include_router(personas.router)
app.include_router(media.router)
