import os
import sys
import json
import time
import uuid
import socket
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from loguru import logger
from dotenv import load_dotenv
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from models import products_db
from schemas import HealthResponse, ProductList

# Chargement des variables d'environnement
load_dotenv()

SERVICE_NAME = "dockerize-app"
GREETING = "Hello, World from the Dockerize App!"

HOST = "0.0.0.0"
DEFAULT_PORT = 5000
MAX_JSON_BODY_BYTES = 100 * 1024
LOG_FILE = os.getenv("LOG_FILE", "logs.json")

_LEVELS = {"TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def resolve_log_level(raw) -> str:
    """Normalize LOG_LEVEL to a level both loguru and uvicorn accept, INFO otherwise."""
    level = (raw or "INFO").strip().upper()
    level = _LEVEL_ALIASES.get(level, level)
    return level if level in _LEVELS else "INFO"


LOG_LEVEL = resolve_log_level(os.getenv("LOG_LEVEL"))

# Console lisible sur stderr, fichier JSON en rotation quotidienne
logger.remove()
logger.add(
    sink=sys.stderr,
    format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    level=LOG_LEVEL,
)
if LOG_FILE:
    logger.add(
        sink=LOG_FILE,
        format="{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {message} | {extra}",
        level=LOG_LEVEL,
        serialize=True,
        rotation="1 day",
    )

_raw_level = os.getenv("LOG_LEVEL", "").strip()
if _raw_level and _raw_level.upper() != "INFO" and LOG_LEVEL == "INFO":
    logger.warning(f"Unknown LOG_LEVEL {_raw_level!r}, falling back to INFO")

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "method", "endpoint", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["service", "method", "endpoint"]
)
ERROR_COUNT = Counter(
    "http_errors_total",
    "Total HTTP errors",
    ["service", "endpoint", "error_type"]
)

app = FastAPI(title="Dockerize App")


def get_port() -> int:
    """
    Resolve the listening port from PORT.
    Absent or empty falls back to DEFAULT_PORT; anything that is not an
    integer in 0..65535 raises ValueError.
    """
    raw = os.getenv("PORT", "").strip()
    if not raw:
        return DEFAULT_PORT
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer, got {raw!r}")
    if not 0 <= port <= 65535:
        raise ValueError(f"PORT must be between 0 and 65535, got {port}")
    return port


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


def _is_json(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    media_type = content_type.split(";")[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


# Declared before log_requests so it runs inside it, with the trace_id bound
@app.middleware("http")
async def parse_json_body(request: Request, call_next):
    """
    Parse JSON request bodies onto request.state.json_body.
    A missing, empty, oversized or malformed body leaves None there and never
    fails the request. Bodies above MAX_JSON_BODY_BYTES are not parsed.
    """
    request.state.json_body = None
    if not _is_json(request):
        return await call_next(request)

    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > MAX_JSON_BODY_BYTES:
        logger.warning(f"Skipping JSON body of {declared} bytes on {request.method} {request.url.path}: too large")
        return await call_next(request)

    body = await request.body()
    if len(body) > MAX_JSON_BODY_BYTES:
        logger.warning(f"Skipping JSON body of {len(body)} bytes on {request.method} {request.url.path}: too large")
    elif body.strip():
        try:
            request.state.json_body = json.loads(body)
        except (ValueError, RecursionError) as exc:
            logger.warning(f"Ignoring malformed JSON body on {request.method} {request.url.path}: {exc!r}")
    return await call_next(request)


# Middleware pour logger les requests avec correlation ID
@app.middleware("http")
async def log_requests(request: Request, call_next):
    # Generate or propagate correlation ID (trace-id)
    trace_id = request.headers.get("X-Trace-ID", str(uuid.uuid4()))
    start_time = time.time()

    request.state.trace_id = trace_id

    # Bind trace_id to logger context
    with logger.contextualize(trace_id=trace_id, service=SERVICE_NAME):
        logger.info(f"Request: {request.method} {request.url.path}")

        response = await call_next(request)

        latency = time.time() - start_time
        endpoint = _route_label(request)

        REQUEST_COUNT.labels(
            service=SERVICE_NAME,
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()
        REQUEST_LATENCY.labels(
            service=SERVICE_NAME,
            method=request.method,
            endpoint=endpoint
        ).observe(latency)
        if endpoint == "unmatched" and 400 <= response.status_code < 500:
            ERROR_COUNT.labels(service=SERVICE_NAME, endpoint=endpoint, error_type="not_found").inc()

        logger.info(
            f"Response status: {response.status_code}",
            status=response.status_code,
            latency=latency,
        )

        response.headers["X-Trace-ID"] = trace_id
        return response


@app.get("/metrics")
async def metrics():
    """Endpoint /metrics compatible Prometheus"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint, used by the container HEALTHCHECK"""
    return {"status": "healthy", "service": SERVICE_NAME}


@app.get("/", response_class=PlainTextResponse)
async def root():
    return GREETING


@app.get("/products", response_model=ProductList)
async def get_products():
    logger.info("Fetching all products")
    return {"products": list(products_db)}


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind a listening TCP socket; OSError propagates on failure."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def main():
    import uvicorn

    try:
        port = get_port()
        sock = bind_socket(HOST, port)
    except (ValueError, OSError) as exc:
        logger.error(f"Failed to start {SERVICE_NAME}: {exc}")
        sys.exit(1)

    bound_port = sock.getsockname()[1]
    logger.info(f"Server is running on http://localhost:{bound_port}")

    config = uvicorn.Config(app, log_level=LOG_LEVEL.lower())
    server = uvicorn.Server(config)
    server.run(sockets=[sock])


if __name__ == "__main__":
    main()
