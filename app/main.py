import os, io, re, sys, errno, shutil, time, asyncio, signal, atexit, threading
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import uuid4

import logging
import subprocess

import structlog
import uvicorn
from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from structlog.contextvars import bind_contextvars, clear_contextvars
from werkzeug.utils import secure_filename


@asynccontextmanager
async def lifespan(app):
    """Lifespan event handler for FastAPI application startup and shutdown."""
    # Startup
    logger.info("FastAPI server is ready to accept requests")
    install_fatal_handlers(asyncio.get_running_loop())
    try:
        sweep_stale_artifacts()
    except Exception as exc:
        logger.warning("Initial artifact sweep failed: %s", exc)
    limiter_task = asyncio.create_task(_periodic_rate_limiter_cleanup())
    _flush_logs()

    yield

    # Shutdown
    logger.info("FastAPI server is shutting down")
    limiter_task.cancel()
    cancelled = CLEANUP.cancel_all()
    if cancelled:
        logger.info("Dropped %d pending cleanup task(s) on shutdown", cancelled)
    _flush_logs()


app = FastAPI(title="TimeFix", lifespan=lifespan)


class RateLimiter:
    def __init__(self, max_requests: int = 100, window_seconds: int = 900) -> None:
        self._limits: defaultdict[str, List[datetime]] = defaultdict(list)
        self._max = max(max_requests, 1)
        self._window = timedelta(seconds=max(window_seconds, 1))
        self._lock = threading.Lock()

    def check(self, identifier: str) -> bool:
        now = datetime.now(timezone.utc)
        cutoff = now - self._window
        with self._lock:
            timestamps = [t for t in self._limits[identifier] if t > cutoff]
            if len(timestamps) >= self._max:
                self._limits[identifier] = timestamps
                return False
            timestamps.append(now)
            self._limits[identifier] = timestamps
            return True

    def retry_after(self, identifier: str) -> int:
        """Seconds until the oldest counted request leaves the window."""
        now = datetime.now(timezone.utc)
        with self._lock:
            timestamps = self._limits.get(identifier) or []
            if not timestamps:
                return 0
            remaining = (min(timestamps) + self._window - now).total_seconds()
        return max(int(remaining) + 1, 0)

    def cleanup_old_identifiers(self) -> None:
        cutoff = datetime.now(timezone.utc) - self._window
        with self._lock:
            stale: List[str] = []
            for identifier, timestamps in self._limits.items():
                if not timestamps or all(t <= cutoff for t in timestamps):
                    stale.append(identifier)
            for identifier in stale:
                self._limits.pop(identifier, None)

    def reset(self) -> None:
        with self._lock:
            self._limits.clear()

    @property
    def limit(self) -> int:
        return self._max

    @property
    def window_seconds(self) -> int:
        return int(self._window.total_seconds())


@dataclass
class Settings:
    HOST: str
    PORT: int
    APP_ENV: str
    UPLOAD_DIR: Path
    PROCESSED_DIR: Path
    STAGING_DIR: Path
    LOGS_DIR: Path
    MAX_UPLOAD_SIZE_MB: int
    UPLOAD_CHUNK_SIZE: int
    MIN_FREE_SPACE_MB: int
    FFMPEG_TIMEOUT_SECONDS: int
    INPUT_CLEANUP_SECONDS: float
    OUTPUT_CLEANUP_SECONDS: float
    RATE_LIMIT_MAX_REQUESTS: int
    RATE_LIMIT_WINDOW_SECONDS: int

    @classmethod
    def load(cls) -> "Settings":
        def env_path(name: str, default: str) -> Path:
            return Path(os.getenv(name, default))

        def env_int(name: str, default: int) -> int:
            return int(os.getenv(name, str(default)))

        def env_float(name: str, default: float) -> float:
            return float(os.getenv(name, str(default)))

        app_env = os.getenv("APP_ENV", "development").strip().lower()
        if app_env not in {"development", "production"}:
            raise ValueError("APP_ENV must be 'development' or 'production'")

        max_upload = env_int("MAX_UPLOAD_SIZE_MB", 500)
        if max_upload < 1:
            raise ValueError("MAX_UPLOAD_SIZE_MB must be >= 1")

        input_cleanup = env_float("INPUT_CLEANUP_SECONDS", 60)
        output_cleanup = env_float("OUTPUT_CLEANUP_SECONDS", 3600)
        if input_cleanup < 0 or output_cleanup < 0:
            raise ValueError("Cleanup delays must be >= 0 seconds")

        max_requests = env_int("RATE_LIMIT_MAX_REQUESTS", 100)
        window = env_int("RATE_LIMIT_WINDOW_SECONDS", 15 * 60)
        if max_requests < 1 or window < 1:
            raise ValueError("RATE_LIMIT_MAX_REQUESTS and RATE_LIMIT_WINDOW_SECONDS must be >= 1")

        return cls(
            HOST=os.getenv("HOST", "0.0.0.0"),
            PORT=env_int("PORT", 3000),
            APP_ENV=app_env,
            UPLOAD_DIR=env_path("UPLOAD_DIR", "/data/uploads"),
            PROCESSED_DIR=env_path("PROCESSED_DIR", "/data/processed"),
            STAGING_DIR=env_path("STAGING_DIR", "/data/staging"),
            LOGS_DIR=env_path("LOGS_DIR", "/data/logs"),
            MAX_UPLOAD_SIZE_MB=max_upload,
            UPLOAD_CHUNK_SIZE=env_int("UPLOAD_CHUNK_SIZE", 1024 * 1024),
            MIN_FREE_SPACE_MB=env_int("MIN_FREE_SPACE_MB", 500),
            FFMPEG_TIMEOUT_SECONDS=env_int("FFMPEG_TIMEOUT_SECONDS", 2 * 60 * 60),
            INPUT_CLEANUP_SECONDS=input_cleanup,
            OUTPUT_CLEANUP_SECONDS=output_cleanup,
            RATE_LIMIT_MAX_REQUESTS=max_requests,
            RATE_LIMIT_WINDOW_SECONDS=window,
        )


load_dotenv()
settings = Settings.load()

# --------- config ---------
# Staged uploads land in INPUT via Path.replace, so keep STAGING_DIR on the same volume
UPLOAD_DIR = settings.UPLOAD_DIR.resolve()
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

PROCESSED_DIR = settings.PROCESSED_DIR.resolve()
PROCESSED_DIR.mkdir(parents=True, exist_ok=True)

STAGING_DIR = settings.STAGING_DIR.resolve()
STAGING_DIR.mkdir(parents=True, exist_ok=True)

LOGS_DIR = settings.LOGS_DIR.resolve()
LOGS_DIR.mkdir(parents=True, exist_ok=True)

APP_LOG_FILE = LOGS_DIR / "application.log"

APP_ROOT = Path(__file__).resolve().parent
TEMPLATES_DIR = APP_ROOT / "templates"
STATIC_DIR = APP_ROOT / "static"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

IS_PRODUCTION = settings.APP_ENV == "production"

MAX_UPLOAD_SIZE_MB = settings.MAX_UPLOAD_SIZE_MB
MAX_UPLOAD_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024
# Multipart boundaries and part headers ride on top of the file bytes
MULTIPART_OVERHEAD_BYTES = 64 * 1024
UPLOAD_CHUNK_SIZE = settings.UPLOAD_CHUNK_SIZE
MIN_FREE_SPACE_MB = settings.MIN_FREE_SPACE_MB
FFMPEG_TIMEOUT_SECONDS = settings.FFMPEG_TIMEOUT_SECONDS

VIDEO_TRACK_TIMESCALE = 90000
OUTPUT_PREFIX = "fixed-"
PROCESSED_URL_PREFIX = "/processed"
# Leaves room for "fixed-<uuid>-" inside a 255 byte filename
MAX_SANITIZED_NAME_LENGTH = 200
FALLBACK_STEM = "video"
DIAGNOSTIC_TAIL_LINES = 40
RATE_LIMITER_CLEANUP_INTERVAL_SECONDS = 600

RATE_LIMITER = RateLimiter(settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)
RATE_LIMIT_MESSAGE = (
    "Too many requests from this IP, please try again after "
    f"{max(settings.RATE_LIMIT_WINDOW_SECONDS // 60, 1)} minutes"
)

REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
# Incoming X-Request-ID values outside this shape are replaced
REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")
FATAL_ERROR = threading.Event()

_FFMPEG_VERSION_CACHE: Optional[Dict[str, Optional[str]]] = None


# ---------- errors ----------
class VideoProcessingError(Exception):
    """Failure that maps onto a JSON ``{"error": ...}`` response."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, details: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class NoFileProvided(VideoProcessingError):
    status_code = 400
    default_message = "No video file uploaded"


class InvalidMimeType(VideoProcessingError):
    status_code = 400
    default_message = "Invalid file type. Only video files are allowed."


class InvalidFilename(VideoProcessingError):
    status_code = 400
    default_message = "Invalid filename"


class PathTraversalRejected(VideoProcessingError):
    status_code = 400
    default_message = "Invalid file path"


class OversizeUpload(VideoProcessingError):
    status_code = 413
    default_message = f"File is too large. Maximum size is {MAX_UPLOAD_SIZE_MB}MB."


class InsufficientStorage(VideoProcessingError):
    status_code = 507
    default_message = "Insufficient disk space"


class TranscodeFailed(VideoProcessingError):
    status_code = 500
    default_message = "Failed to process video"


class InternalError(VideoProcessingError):
    status_code = 500
    default_message = "Internal server error"


def error_payload(exc: VideoProcessingError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": exc.message}
    if exc.status_code >= 500:
        # Server-side diagnostics stay out of production responses
        payload["details"] = "Server error" if IS_PRODUCTION else (exc.details or exc.message)
    return payload


# ---------- logging ----------
try:
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)
except (AttributeError, io.UnsupportedOperation):
    # Some deployment targets don't expose reconfigure
    pass

file_stream = open(APP_LOG_FILE, "a", encoding="utf-8", buffering=1)
atexit.register(file_stream.close)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging infrastructure
        record.request_id = REQUEST_ID_CTX.get(None) or "-"
        return True


log_format = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s'
request_id_filter = RequestIdFilter()

file_handler = logging.StreamHandler(file_stream)
file_handler.setLevel(logging.INFO)
file_handler.addFilter(request_id_filter)
file_handler.setFormatter(logging.Formatter(log_format))

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_handler.addFilter(request_id_filter)
console_handler.setFormatter(logging.Formatter(log_format))

logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler]
)

logger = logging.getLogger("timefix")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)
struct_logger = structlog.get_logger("timefix")

uvicorn_logger = logging.getLogger("uvicorn")
uvicorn_logger.addHandler(file_handler)
uvicorn_access = logging.getLogger("uvicorn.access")
uvicorn_access.addHandler(file_handler)

logger.info("="*60)
logger.info("TimeFix starting in %s mode", settings.APP_ENV)
logger.info(f"UPLOAD_DIR: {UPLOAD_DIR}")
logger.info(f"PROCESSED_DIR: {PROCESSED_DIR}")
logger.info(f"STAGING_DIR: {STAGING_DIR}")
logger.info(f"LOGS_DIR: {LOGS_DIR}")
logger.info(f"MAX_UPLOAD_SIZE_MB: {MAX_UPLOAD_SIZE_MB}")
logger.info(
    "Cleanup delays: input=%ss output=%ss",
    settings.INPUT_CLEANUP_SECONDS,
    settings.OUTPUT_CLEANUP_SECONDS,
)
logger.info("="*60)


def _flush_logs():
    """Force flush all log handlers."""
    for handler in logging.getLogger().handlers:
        handler.flush()


def install_fatal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    """Log and shut down on uncaught exceptions instead of running on in an unknown state."""

    def _request_shutdown(kind: str, exc: BaseException) -> None:
        logger.critical(
            "%s! Shutting down... %s: %s",
            kind,
            type(exc).__name__,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        _flush_logs()
        FATAL_ERROR.set()
        # uvicorn treats SIGTERM as a graceful stop
        os.kill(os.getpid(), signal.SIGTERM)

    def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        if exc is not None and ("future" in context or "task" in context):
            _request_shutdown("UNHANDLED TASK EXCEPTION", exc)
            return
        loop.default_exception_handler(context)

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit or args.exc_value is None:
            return
        _request_shutdown(f"UNCAUGHT EXCEPTION in thread {getattr(args.thread, 'name', '?')}", args.exc_value)

    def _excepthook(exc_type, exc, tb) -> None:
        logger.critical("UNCAUGHT EXCEPTION! Shutting down...", exc_info=(exc_type, exc, tb))
        _flush_logs()
        FATAL_ERROR.set()
        sys.__excepthook__(exc_type, exc, tb)

    loop.set_exception_handler(_loop_exception_handler)
    threading.excepthook = _thread_excepthook
    sys.excepthook = _excepthook


# ---------- filesystem helpers ----------
def check_disk_space(path: Path, required_mb: Optional[int] = None) -> None:
    needed = MIN_FREE_SPACE_MB if required_mb is None else required_mb
    target = path if path.exists() else path.parent
    target.mkdir(parents=True, exist_ok=True)
    stat = shutil.disk_usage(target)
    available_mb = stat.free / (1024 * 1024)
    if available_mb < needed:
        logger.warning(
            "Insufficient disk space at %s: %.1f MB available, %d MB required",
            target,
            available_mb,
            needed,
        )
        _flush_logs()
        raise InsufficientStorage()


def disk_snapshot() -> Dict[str, Dict[str, Any]]:
    snapshot: Dict[str, Dict[str, Any]] = {}
    targets = {
        "uploads": UPLOAD_DIR,
        "processed": PROCESSED_DIR,
        "staging": STAGING_DIR,
        "logs": LOGS_DIR,
    }
    for name, target in targets.items():
        try:
            usage = shutil.disk_usage(target)
            snapshot[name] = {
                "total_mb": usage.total / (1024 * 1024),
                "used_mb": usage.used / (1024 * 1024),
                "available_mb": usage.free / (1024 * 1024),
            }
        except FileNotFoundError:
            snapshot[name] = {"error": "not_found"}
        except Exception as exc:
            snapshot[name] = {"error": str(exc)}
    return snapshot


def ffmpeg_snapshot() -> Dict[str, Optional[str]]:
    global _FFMPEG_VERSION_CACHE
    if _FFMPEG_VERSION_CACHE is not None:
        return dict(_FFMPEG_VERSION_CACHE)
    try:
        result = subprocess.run(
            ["ffmpeg", "-version"], capture_output=True, text=True, timeout=5
        )
        available = result.returncode == 0
        version_line = next(iter((result.stdout or "").splitlines()), "") if available else ""
        error = None if available else (result.stderr or "Unknown failure")
    except Exception as exc:
        available = False
        version_line = ""
        error = str(exc)
    snapshot = {"available": available, "version": version_line, "error": error}
    _FFMPEG_VERSION_CACHE = dict(snapshot)
    return snapshot


def save_log(text: str, operation: str) -> Optional[Path]:
    """Persist an ffmpeg log under LOGS_DIR/YYYYMMDD/ and return the saved path."""
    if not text:
        return None
    now = datetime.now(timezone.utc)
    folder = LOGS_DIR / now.strftime("%Y%m%d")
    try:
        folder.mkdir(parents=True, exist_ok=True)
        dst = folder / (now.strftime("%Y%m%d_%H%M%S_") + f"{operation}.log")
        dst.write_text(text, encoding="utf-8")
        return dst
    except Exception as exc:
        logger.warning("Failed to save ffmpeg log for %s: %s", operation, exc)
        return None


# ---------- path sanitizer ----------
def safe_path_check(base: Path, rel: str) -> Path:
    # Resolve base path first to handle symlinks
    base = base.resolve()
    try:
        target = (base / rel).resolve()
    except Exception as exc:
        logger.warning("Invalid path provided for %s: %s", base, rel)
        _flush_logs()
        raise PathTraversalRejected() from exc

    # relative_to() raises ValueError if target is not under base
    try:
        relative = target.relative_to(base)
    except ValueError:
        relative = None
    if relative is None or not relative.parts:
        logger.warning("Blocked path traversal attempt: %s -> %s", rel, target)
        _flush_logs()
        raise PathTraversalRejected()

    return target


def sanitize_filename(name: Optional[str]) -> str:
    """Reduce a client-supplied filename to a portable basename.

    Directory components and traversal segments are dropped, the stem and the
    extension are cleaned separately so a name whose stem has no portable
    characters keeps its extension, and the result is capped at
    ``MAX_SANITIZED_NAME_LENGTH`` characters. Raises ``InvalidFilename`` when
    nothing usable is left.
    """
    basename = PurePosixPath((name or "").replace("\\", "/")).name
    stem, suffix = os.path.splitext(basename)
    safe_stem = secure_filename(stem)
    safe_suffix = secure_filename(suffix.lstrip("."))
    if not safe_stem and not safe_suffix:
        raise InvalidFilename()
    if not safe_stem:
        safe_stem = FALLBACK_STEM
    if not safe_suffix:
        return safe_stem[:MAX_SANITIZED_NAME_LENGTH]
    safe_suffix = safe_suffix[:16]
    stem_budget = MAX_SANITIZED_NAME_LENGTH - len(safe_suffix) - 1
    return f"{safe_stem[:stem_budget]}.{safe_suffix}"


@dataclass(frozen=True)
class ArtifactPaths:
    job_id: str
    sanitized_name: str
    input_path: Path
    output_path: Path

    @property
    def output_name(self) -> str:
        return self.output_path.name

    @property
    def video_url(self) -> str:
        return f"{PROCESSED_URL_PREFIX}/{self.output_name}"


def build_artifact_paths(filename: Optional[str], *, job_id: Optional[str] = None) -> ArtifactPaths:
    sanitized = sanitize_filename(filename)
    job = job_id or str(uuid4())
    input_path = safe_path_check(UPLOAD_DIR, f"{job}-{sanitized}")
    output_path = safe_path_check(PROCESSED_DIR, f"{OUTPUT_PREFIX}{job}-{sanitized}")
    return ArtifactPaths(
        job_id=job,
        sanitized_name=sanitized,
        input_path=input_path,
        output_path=output_path,
    )


# ---------- upload receiver ----------
def ensure_upload_type(upload: UploadFile, expected_prefix: str, field: str = "video") -> None:
    content_type = (upload.content_type or "").lower()
    if not content_type.startswith(expected_prefix):
        logger.warning(
            "%s upload rejected due to invalid content-type: %s",
            field,
            content_type or "unknown",
        )
        raise InvalidMimeType()


def _declared_length_exceeds_limit(request: Request) -> bool:
    header_value = request.headers.get("content-length")
    if not header_value:
        return False
    try:
        declared = int(header_value)
    except ValueError:
        return False
    return declared > MAX_UPLOAD_SIZE_BYTES + MULTIPART_OVERHEAD_BYTES


def _move_into_place(src: Path, dest: Path) -> None:
    try:
        src.replace(dest)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        # Staging lives on another volume; fall back to copy + delete
        shutil.move(str(src), str(dest))


async def stream_upload_to_path(upload: UploadFile, dest: Path, *, staging_dir: Optional[Path] = None) -> int:
    await upload.seek(0)
    total = 0
    try:
        header_value = upload.headers.get("content-length") if upload.headers else None
    except AttributeError:
        header_value = None
    if header_value:
        try:
            declared_length = int(header_value)
        except (TypeError, ValueError):
            logger.warning("Invalid content-length header on upload %s: %s", upload.filename, header_value)
        else:
            if declared_length > MAX_UPLOAD_SIZE_BYTES:
                logger.warning(
                    "Upload %s declared size %s exceeds max bytes %s",
                    upload.filename,
                    declared_length,
                    MAX_UPLOAD_SIZE_BYTES,
                )
                raise OversizeUpload()
    temp_dest = (staging_dir or STAGING_DIR) / (dest.name + ".partial")
    try:
        with temp_dest.open("wb") as buffer:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                chunk_len = len(chunk)
                if total + chunk_len > MAX_UPLOAD_SIZE_BYTES:
                    logger.warning("Upload exceeded max size: %s", upload.filename)
                    _flush_logs()
                    raise OversizeUpload()
                buffer.write(chunk)
                total += chunk_len
    except VideoProcessingError:
        _discard(temp_dest, "partial upload")
        raise
    except Exception as exc:
        _discard(temp_dest, "incomplete upload")
        logger.error("Failed to persist upload %s: %s", upload.filename, exc)
        _flush_logs()
        raise InternalError("Failed to save upload", details=str(exc)) from exc
    try:
        _move_into_place(temp_dest, dest)
    except Exception as exc:
        _discard(temp_dest, "staged upload")
        logger.error("Failed to finalize upload %s: %s", upload.filename, exc)
        _flush_logs()
        raise InternalError("Failed to finalize upload", details=str(exc)) from exc
    return total


def _discard(path: Path, what: str) -> None:
    if not path.exists():
        return
    try:
        path.unlink()
    except Exception as exc:
        logger.warning("Failed cleaning %s %s: %s", what, path, exc)


# ---------- transcode invoker ----------
def _clock_to_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class FFmpegProgressLogger:
    """Turns ffmpeg stderr lines into throttled "Processing: N% done" log records.

    The total duration comes from the ``Duration:`` line ffmpeg prints for the
    input; without it no percentage can be computed and nothing is logged.
    ``observer`` receives every computed percentage.
    """

    _DURATION_PATTERN = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
    _TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")
    _SPEED_PATTERN = re.compile(r"speed=\s*(\d+\.?\d*)x")

    def __init__(
        self,
        job_id: str,
        *,
        step: float = 10.0,
        observer: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.job_id = job_id
        self.total_seconds: Optional[float] = None
        self.percent: Optional[float] = None
        self._step = step
        self._last_logged: Optional[float] = None
        self._observer = observer

    def __call__(self, line: str) -> None:
        if self.total_seconds is None:
            duration = self._DURATION_PATTERN.search(line)
            if duration:
                self.total_seconds = max(_clock_to_seconds(*duration.groups()), 0.001)
                return
        match = self._TIME_PATTERN.search(line)
        if not match or self.total_seconds is None:
            return
        try:
            elapsed = _clock_to_seconds(*match.groups())
        except ValueError:
            return

        percent = min(100.0, (elapsed / self.total_seconds) * 100.0)
        self.percent = percent
        if self._observer is not None:
            self._observer(percent)

        if self._last_logged is not None and percent < self._last_logged + self._step:
            return
        self._last_logged = percent
        speed = self._SPEED_PATTERN.search(line)
        if speed:
            logger.info("Processing %s: %d%% done (speed=%sx)", self.job_id, int(percent), speed.group(1))
        else:
            logger.info("Processing %s: %d%% done", self.job_id, int(percent))


@dataclass
class TranscodeResult:
    ok: bool
    output_path: Optional[Path]
    return_code: Optional[int]
    diagnostics: str = ""


def build_remux_command(input_path: Path, output_path: Path) -> List[str]:
    return [
        "ffmpeg",
        "-hide_banner",
        "-y",
        # genpts is a demuxer flag, so it must precede -i
        "-fflags",
        "+genpts",
        "-i",
        str(input_path),
        # Keep every stream, not just the default video and audio pick
        "-map",
        "0",
        "-c:v",
        "copy",
        "-c:a",
        "copy",
        "-movflags",
        "+faststart",
        "-video_track_timescale",
        str(VIDEO_TRACK_TIMESCALE),
        str(output_path),
    ]


async def _cancel_tasks(tasks: List["asyncio.Task[None]"]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass


async def run_ffmpeg_with_timeout(
    cmd: List[str],
    log_handle,
    *,
    progress_parser: Optional[Callable[[str], None]] = None,
    timeout: Optional[float] = None,
) -> int:
    """Run ffmpeg without blocking the event loop and return its exit code.

    stderr is split on carriage returns as well as newlines so the periodic
    stats lines reach ``progress_parser``. Every line is copied into
    ``log_handle``. Raises ``TranscodeFailed`` if the process cannot be started
    or outlives ``FFMPEG_TIMEOUT_SECONDS``.
    """
    limit = FFMPEG_TIMEOUT_SECONDS if timeout is None else timeout

    async def _pump_stream(stream: Optional[asyncio.StreamReader], *, parse_progress: bool) -> None:
        if stream is None:
            return
        buffer = ""

        def _emit(line: str) -> None:
            try:
                log_handle.write(line + "\n")
            except Exception:
                pass
            if parse_progress and progress_parser is not None:
                try:
                    progress_parser(line)
                except Exception as exc:
                    logger.debug("Progress parser failed on line: %s - %s", line[:100], exc)

        try:
            while True:
                # Small reads capture ffmpeg's \r-terminated stats
                chunk = await stream.read(1024)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="ignore")
                pieces = re.split(r"[\r\n]", buffer)
                buffer = pieces[-1]
                for piece in pieces[:-1]:
                    if piece:
                        _emit(piece)
            if buffer:
                _emit(buffer)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Stopped reading ffmpeg output: %s", exc)

    def _child_setup() -> None:
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

    subprocess_kwargs: Dict[str, Any] = {
        "stdin": asyncio.subprocess.DEVNULL,
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
    }
    if os.name != "nt":
        subprocess_kwargs["preexec_fn"] = _child_setup

    try:
        proc = await asyncio.create_subprocess_exec(*cmd, **subprocess_kwargs)
    except Exception as exc:
        logger.error("Failed to launch ffmpeg command %s: %s", cmd, exc)
        _flush_logs()
        raise TranscodeFailed(details=f"Failed to start ffmpeg: {exc}") from exc

    pump_tasks = [
        asyncio.create_task(_pump_stream(proc.stdout, parse_progress=False)),
        asyncio.create_task(_pump_stream(proc.stderr, parse_progress=True)),
    ]
    try:
        return_code = await asyncio.wait_for(proc.wait(), timeout=limit)
    except asyncio.TimeoutError:
        logger.error(
            "FFmpeg process timed out after %s seconds for command: %s",
            limit,
            " ".join(cmd[:10]),
        )
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=5)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            proc.kill()
            try:
                await asyncio.wait_for(proc.wait(), timeout=1)
            except asyncio.TimeoutError:
                pass
        await _cancel_tasks(pump_tasks)
        _flush_logs()
        raise TranscodeFailed(details=f"ffmpeg timed out after {limit} seconds") from None
    except Exception:
        await _cancel_tasks(pump_tasks)
        raise

    try:
        await asyncio.wait_for(asyncio.gather(*pump_tasks), timeout=5)
    except asyncio.TimeoutError:
        await _cancel_tasks(pump_tasks)
    return return_code


def _tail(text: str, lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
    return "\n".join(text.splitlines()[-lines:])


async def fix_video_timeline(
    input_path: Path,
    output_path: Path,
    *,
    job_id: str = "-",
    on_progress: Optional[Callable[[float], None]] = None,
) -> TranscodeResult:
    """Stream-copy ``input_path`` into ``output_path`` with a repaired timeline.

    Both paths are re-checked against their base directories before ffmpeg
    sees them. A failed run never leaves an output file behind.
    """
    source = safe_path_check(UPLOAD_DIR, str(input_path))
    target = safe_path_check(PROCESSED_DIR, str(output_path))

    cmd = build_remux_command(source, target)
    progress = FFmpegProgressLogger(job_id, observer=on_progress)
    log_buffer = io.StringIO()
    logger.info("Starting remux for job %s: %s", job_id, source.name)

    try:
        code: Optional[int] = await run_ffmpeg_with_timeout(cmd, log_buffer, progress_parser=progress)
        diagnostics = _tail(log_buffer.getvalue())
    except TranscodeFailed as exc:
        code = None
        diagnostics = "\n".join(filter(None, [_tail(log_buffer.getvalue()), exc.details]))

    if code == 0 and target.is_file():
        logger.info("Video processing completed successfully for job %s", job_id)
        return TranscodeResult(ok=True, output_path=target, return_code=code, diagnostics=diagnostics)

    _discard(target, "partial output")
    saved = save_log(log_buffer.getvalue(), f"remux_{job_id}")
    logger.error(
        "Error during processing for job %s (exit code %s)%s",
        job_id,
        code,
        f", log saved to {saved}" if saved else "",
    )
    _flush_logs()
    if not diagnostics:
        diagnostics = f"ffmpeg exited with code {code}" if code is not None else "ffmpeg did not run"
    return TranscodeResult(ok=False, output_path=None, return_code=code, diagnostics=diagnostics)


# ---------- cleanup scheduler ----------
def remove_artifact(path: Path, *, label: str) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        logger.warning("Error removing %s file %s: already removed", label, path.name)
        return False
    except Exception as exc:
        logger.warning("Error removing %s file %s: %s", label, path, exc)
        return False
    logger.info("Removed %s file %s", label, path.name)
    struct_logger.info("artifact_removed", kind=label, filename=path.name)
    return True


class CleanupScheduler:
    """Deletes finished artifacts after a delay, independently of the request."""

    def __init__(self, input_delay: float, output_delay: float) -> None:
        self.input_delay = input_delay
        self.output_delay = output_delay
        self._tasks: Set["asyncio.Task[None]"] = set()

    def schedule(self, path: Path, delay: float, *, label: str) -> "asyncio.Task[None]":
        task = asyncio.get_running_loop().create_task(self._remove_later(path, delay, label))
        # The loop only keeps weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule_job(self, paths: ArtifactPaths) -> None:
        self.schedule(paths.input_path, self.input_delay, label="input")
        self.schedule(paths.output_path, self.output_delay, label="output")

    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def cancel_all(self) -> int:
        cancelled = 0
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    async def _remove_later(self, path: Path, delay: float, label: str) -> None:
        await asyncio.sleep(delay)
        remove_artifact(path, label=label)


CLEANUP = CleanupScheduler(settings.INPUT_CLEANUP_SECONDS, settings.OUTPUT_CLEANUP_SECONDS)


def sweep_stale_artifacts(now: Optional[float] = None) -> int:
    """Delete artifacts whose cleanup timers were lost when the process restarted."""
    current = time.time() if now is None else now
    removed = 0
    targets = (
        (UPLOAD_DIR, CLEANUP.input_delay, "input"),
        (STAGING_DIR, CLEANUP.input_delay, "staged"),
        (PROCESSED_DIR, CLEANUP.output_delay, "output"),
    )
    for base, max_age, label in targets:
        try:
            children = list(base.iterdir())
        except Exception as exc:
            logger.warning("Failed to scan directory %s: %s", base, exc)
            continue
        for child in children:
            if not child.is_file():
                continue
            try:
                age = current - child.stat().st_mtime
            except Exception as exc:
                logger.warning("Failed to inspect file %s: %s", child, exc)
                continue
            if age >= max_age and remove_artifact(child, label=label):
                removed += 1
    if removed:
        logger.info("Startup sweep removed %d stale artifact(s)", removed)
    return removed


async def _periodic_rate_limiter_cleanup() -> None:
    while True:
        await asyncio.sleep(RATE_LIMITER_CLEANUP_INTERVAL_SECONDS)
        try:
            RATE_LIMITER.cleanup_old_identifiers()
        except Exception as exc:
            logger.warning("Rate limiter cleanup failed: %s", exc)


async def _schedule_cleanup(paths: ArtifactPaths) -> None:
    CLEANUP.schedule_job(paths)


# ---------- middleware ----------
def client_address(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class _BodyLimitExceeded(Exception):
    pass


class UploadSizeLimitMiddleware:
    """Count request body bytes on API uploads and answer 413 once the cap is passed.

    Covers bodies without a usable Content-Length (chunked transfer). The
    wrapped ``receive`` raises as soon as the running total exceeds the cap, so
    form parsing stops before the handler runs and nothing past the cap is
    buffered.
    """

    def __init__(self, app: ASGIApp, max_body_bytes: Optional[int] = None) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope.get("type") != "http"
            or scope.get("method") != "POST"
            or not str(scope.get("path", "")).startswith("/api/")
        ):
            await self.app(scope, receive, send)
            return

        limit = self.max_body_bytes
        if limit is None:
            limit = MAX_UPLOAD_SIZE_BYTES + MULTIPART_OVERHEAD_BYTES
        received = 0
        exceeded = False
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received, exceeded
            message = await receive()
            if message.get("type") == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    exceeded = True
                    raise _BodyLimitExceeded()
            return message

        async def guarded_send(message: Message) -> None:
            nonlocal response_started
            # Once the cap is hit the app's own error response is replaced
            if exceeded:
                return
            if message.get("type") == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, guarded_send)
        except Exception:
            if not exceeded:
                raise
        if not exceeded:
            return

        client = scope.get("client")
        logger.warning(
            "Aborted streamed upload from %s after %d bytes (limit %d)",
            client[0] if client else "unknown",
            received,
            limit,
        )
        _flush_logs()
        if response_started:
            return
        exc = OversizeUpload()
        response = JSONResponse(error_payload(exc), status_code=exc.status_code)
        response.headers["Connection"] = "close"
        await response(scope, receive, send)


# Registered first so the request id and security headers wrap its 413 response
app.add_middleware(UploadSizeLimitMiddleware)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", "")
    if not REQUEST_ID_PATTERN.fullmatch(request_id):
        request_id = uuid4().hex
    token = REQUEST_ID_CTX.set(request_id)
    bind_contextvars(request_id=request_id)
    try:
        if request.url.path.startswith("/api/"):
            identifier = client_address(request)
            if not RATE_LIMITER.check(identifier):
                logger.warning("Rate limit exceeded for %s on %s", identifier, request.url.path)
                response = JSONResponse({"error": RATE_LIMIT_MESSAGE}, status_code=429)
                response.headers["Retry-After"] = str(RATE_LIMITER.retry_after(identifier))
                response.headers["RateLimit-Limit"] = str(RATE_LIMITER.limit)
                response.headers["X-Request-ID"] = request_id
                return response
            if request.method == "POST" and _declared_length_exceeds_limit(request):
                logger.warning(
                    "Rejected oversized upload from %s: content-length %s",
                    identifier,
                    request.headers.get("content-length"),
                )
                exc = OversizeUpload()
                response = JSONResponse(error_payload(exc), status_code=exc.status_code)
                response.headers["Connection"] = "close"
                response.headers["X-Request-ID"] = request_id
                return response
        response = await call_next(request)
        response.headers.setdefault("X-Request-ID", request_id)
        return response
    finally:
        clear_contextvars()
        REQUEST_ID_CTX.reset(token)


@app.middleware("http")
async def security_headers_middleware(request, call_next):
    response = await call_next(request)
    csp = (
        "default-src 'self'; script-src 'self'; style-src 'self'; "
        "img-src 'self' data:; media-src 'self'"
    )
    if IS_PRODUCTION:
        csp += "; upgrade-insecure-requests"
    response.headers.setdefault("Content-Security-Policy", csp)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    return response


# ---------- error handlers ----------
@app.exception_handler(VideoProcessingError)
async def video_processing_error_handler(request: Request, exc: VideoProcessingError):
    return JSONResponse(error_payload(exc), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("Rejected malformed request to %s: %s", request.url.path, exc.errors())
    return JSONResponse({"error": "Invalid request"}, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse({"error": detail}, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    _flush_logs()
    return JSONResponse(error_payload(InternalError(details=str(exc))), status_code=500)


app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")


# ---------- pages ----------
@app.get("/", response_class=HTMLResponse, include_in_schema=False)
def root(request: Request):
    context = {"max_upload_mb": MAX_UPLOAD_SIZE_MB}
    return templates.TemplateResponse(request, "index.html", context)


@app.api_route("/processed/{filename}", methods=["GET", "HEAD"], include_in_schema=False)
def processed_file(filename: str):
    target = safe_path_check(PROCESSED_DIR, filename)
    if not target.is_file():
        raise StarletteHTTPException(status_code=404, detail="File not found")
    return FileResponse(target)


@app.get("/health")
def health():
    disk = disk_snapshot()
    ffmpeg_info = ffmpeg_snapshot()

    disk_ok = True
    for info in disk.values():
        if "error" in info or info.get("available_mb", 0) < MIN_FREE_SPACE_MB:
            disk_ok = False
            break

    return {
        "ok": bool(ffmpeg_info.get("available")) and disk_ok,
        "environment": settings.APP_ENV,
        "disk": disk,
        "ffmpeg": ffmpeg_info,
        "cleanup": {"pending": CLEANUP.pending()},
    }


# ---------- routes ----------
def _log_failure(
    exc: VideoProcessingError,
    upload: UploadFile,
    client: str,
    paths: Optional[ArtifactPaths],
) -> None:
    size = getattr(upload, "size", None)
    context = {
        "filename": upload.filename or "unknown",
        "size": size if size is not None else "unknown",
        "ip": client,
        "job_id": paths.job_id if paths else None,
    }
    if exc.status_code >= 500:
        logger.error("Error processing video: %s (%s) request=%s", exc.message, exc.details or "-", context)
        struct_logger.error("video_processing_failed", status=exc.status_code, error=exc.message, **context)
    else:
        logger.warning("Rejected video upload: %s request=%s", exc.message, context)
        struct_logger.warning("video_processing_failed", status=exc.status_code, error=exc.message, **context)
    _flush_logs()


@app.post("/api/process-video")
async def process_video(
    request: Request,
    background_tasks: BackgroundTasks,
    video: Optional[UploadFile] = File(None),
):
    client = client_address(request)
    if video is None or not video.filename:
        logger.warning("Upload from %s rejected: no video file field", client)
        raise NoFileProvided()

    logger.info("Received upload %s (%s) from %s", video.filename, video.content_type, client)
    started = time.perf_counter()
    paths: Optional[ArtifactPaths] = None
    input_written = False
    try:
        ensure_upload_type(video, "video/")
        paths = build_artifact_paths(video.filename)
        check_disk_space(STAGING_DIR)
        size = await stream_upload_to_path(video, paths.input_path)
        input_written = True
        result = await fix_video_timeline(paths.input_path, paths.output_path, job_id=paths.job_id)
        if not result.ok:
            raise TranscodeFailed(details=result.diagnostics)
    except VideoProcessingError as exc:
        _log_failure(exc, video, client, paths)
        if input_written and paths is not None:
            CLEANUP.schedule(paths.input_path, CLEANUP.input_delay, label="input")
        raise
    except Exception as exc:
        failure = InternalError(TranscodeFailed.default_message, details=str(exc))
        _log_failure(failure, video, client, paths)
        if input_written and paths is not None:
            CLEANUP.schedule(paths.input_path, CLEANUP.input_delay, label="input")
        raise failure from exc

    # Runs after the response has been sent
    background_tasks.add_task(_schedule_cleanup, paths)

    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info("Video %s processed as %s in %d ms", video.filename, paths.output_name, duration_ms)
    struct_logger.info(
        "video_processed",
        job_id=paths.job_id,
        filename=paths.sanitized_name,
        size_bytes=size,
        duration_ms=duration_ms,
    )
    return {
        "success": True,
        "message": "Video processed successfully",
        "videoUrl": paths.video_url,
    }


def run() -> None:
    """Serve the app with uvicorn and exit non-zero after a fatal error."""
    logger.info("Server running in %s mode on port %d", settings.APP_ENV, settings.PORT)
    logger.info("Visit http://localhost:%d in your browser", settings.PORT)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)
    if FATAL_ERROR.is_set():
        sys.exit(1)


if __name__ == "__main__":
    run()
