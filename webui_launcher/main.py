"""
Launcher dashboard application.

Starts the supervised server on startup and provides a small web dashboard
and REST API for its status, output and settings. Output is streamed to the
dashboard with Server-Sent Events.
"""

import asyncio
import json
import logging
import webbrowser
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, StreamingResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field

from . import __version__
from .config import Config, load_config
from .console import ERROR_MESSAGE_COLOR, OutputBuffer
from .errors import AlreadyRunning, LaunchError, TerminationError
from .monitor import get_process_metrics
from .process import ProcessSupervisor

logger = logging.getLogger(__name__)

templates_dir = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(templates_dir))


def configure_logging(config: Config):
    """Log to a rotating file in the data directory and to the console."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        config.log_path,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)

    logging.basicConfig(
        level=logging.INFO,
        handlers=[file_handler, console_handler],
    )


# Pydantic models for API
class SettingsUpdate(BaseModel):
    web_url: Optional[str] = None
    command: Optional[str] = Field(None, min_length=1, description="Executable to run")
    arguments: Optional[str] = None
    working_directory: Optional[str] = Field(None, description="Empty means the home directory")
    startup_delay_ms: Optional[int] = Field(None, ge=0)
    start_minimized: Optional[bool] = None
    application_title: Optional[str] = Field(None, min_length=1)


class LauncherState:
    """Objects shared by the request handlers."""

    def __init__(self, config: Config, supervisor: ProcessSupervisor, output: OutputBuffer):
        self.config = config
        self.supervisor = supervisor
        self.output = output
        self.startup_task: Optional[asyncio.Task] = None

    def start_server(self) -> bool:
        """Start the supervised server, reporting progress to the output pane."""
        title = self.config.application_title
        self.output.notice(f"Starting {title}...")
        self.output.notice(f"Command: {self.config.command} {self.config.arguments}")
        self.output.notice(f"Working Directory: {self.config.effective_working_directory()}")
        try:
            self.supervisor.start(self.config.launch_spec())
        except LaunchError as e:
            logger.error(f"Failed to start {title}: {e}")
            self.output.notice(f"Error starting {title}: {e}", color=ERROR_MESSAGE_COLOR)
            return False
        return True

    async def after_startup_delay(self):
        """Announce the server after the startup delay and open the dashboard."""
        await asyncio.sleep(self.config.startup_delay_ms / 1000)
        title = self.config.application_title
        if not self.supervisor.status().is_running:
            return
        if self.config.start_minimized:
            self.output.notice(f"{title} started. Running in the background.")
        else:
            self.output.notice(f"{title} started.")
            open_in_browser(f"http://{self.config.host}:{self.config.port}/")

    def schedule_startup_delay(self):
        if self.startup_task and not self.startup_task.done():
            self.startup_task.cancel()
        self.startup_task = asyncio.create_task(self.after_startup_delay())


def open_in_browser(url: str) -> bool:
    try:
        return webbrowser.open(url)
    except webbrowser.Error as e:
        logger.error(f"Error opening web browser: {e}")
        return False


async def probe_web_ui(url: str) -> bool:
    """Check whether the web UI answers HTTP requests."""
    try:
        async with httpx.AsyncClient() as client:
            await client.get(url, timeout=2.0)
        return True
    except (httpx.HTTPError, httpx.InvalidURL):
        return False


def create_app(
    config: Optional[Config] = None,
    supervisor: Optional[ProcessSupervisor] = None,
    autostart: bool = True,
) -> FastAPI:
    """Build the dashboard application."""
    if config is None:
        config = load_config()
        configure_logging(config)

    output = OutputBuffer(max_entries=config.output_history)
    if supervisor is None:
        supervisor = ProcessSupervisor()
    supervisor.set_sink(output.on_line)
    supervisor.set_observer(output.on_status)
    state = LauncherState(config, supervisor, output)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        logger.info(f"Starting {config.application_title} launcher...")
        if autostart and state.start_server():
            state.schedule_startup_delay()

        yield

        logger.info("Shutting down launcher...")
        if state.startup_task:
            state.startup_task.cancel()
        try:
            await asyncio.to_thread(supervisor.terminate)
        except TerminationError as e:
            logger.error(f"Failed to stop {config.application_title}: {e}")

    app = FastAPI(
        title=config.application_title,
        description="Launcher and log console for a local Open WebUI server",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.launcher = state

    # Dashboard
    @app.get("/", response_class=HTMLResponse)
    async def dashboard(request: Request):
        """Render the dashboard."""
        return templates.TemplateResponse(
            request,
            "index.html",
            {
                "config": config,
                "status": supervisor.status(),
                "entries": output.recent(),
            },
        )

    # Status
    @app.get("/api/status")
    async def get_status():
        """Get supervisor status and resource usage."""
        status = supervisor.status()
        metrics = await asyncio.to_thread(get_process_metrics, status.pid)
        return {
            **status.to_dict(),
            "metrics": metrics,
            "web_url": config.web_url,
            "web_ui_reachable": await probe_web_ui(config.web_url) if status.is_running else False,
        }

    # Control
    @app.post("/api/start")
    async def start_server():
        """Start the supervised server."""
        status = supervisor.status()
        if status.is_running:
            raise HTTPException(status_code=409, detail=str(AlreadyRunning(status.pid)))

        output.notice(f"Starting {config.application_title}...")
        try:
            await asyncio.to_thread(supervisor.start, config.launch_spec())
        except AlreadyRunning as e:
            raise HTTPException(status_code=409, detail=str(e))
        except LaunchError as e:
            output.notice(f"Error starting {config.application_title}: {e}", color=ERROR_MESSAGE_COLOR)
            raise HTTPException(status_code=500, detail=str(e))

        state.schedule_startup_delay()
        return {"status": "started", **supervisor.status().to_dict()}

    @app.post("/api/stop")
    async def stop_server():
        """Stop the supervised server."""
        if not supervisor.status().is_running:
            return {"status": "not_running", **supervisor.status().to_dict()}

        try:
            await asyncio.to_thread(supervisor.terminate)
        except TerminationError as e:
            raise HTTPException(status_code=500, detail=str(e))

        output.notice(f"{config.application_title} stopped.")
        return {"status": "stopped", **supervisor.status().to_dict()}

    @app.post("/api/open")
    async def open_web_ui():
        """Open the web UI in the default browser."""
        if not open_in_browser(config.web_url):
            raise HTTPException(status_code=500, detail="Could not open a web browser")
        output.notice(f"Opening web browser to {config.web_url}")
        return {"status": "opened", "url": config.web_url}

    # Logs
    @app.get("/api/logs")
    async def get_logs(lines: int = Query(200, ge=1, le=5000)):
        """Get recent output entries."""
        entries = output.recent(lines)
        return {"entries": [e.to_dict() for e in entries], "total": len(entries)}

    @app.get("/api/logs/stream")
    async def stream_logs():
        """
        Stream new output entries and status changes.

        Returns Server-Sent Events (SSE) stream.
        """
        queue = output.subscribe()

        async def event_stream():
            try:
                yield f"data: {json.dumps({'type': 'status', 'data': supervisor.status().to_dict()})}\n\n"
                while True:
                    message = await queue.get()
                    yield f"data: {json.dumps(message)}\n\n"
            finally:
                output.unsubscribe(queue)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # Settings
    @app.get("/api/settings")
    async def get_settings():
        return config.to_dict()

    @app.put("/api/settings")
    async def update_settings(data: SettingsUpdate):
        """Update and save the settings."""
        config.update(data.model_dump(exclude_none=True))
        try:
            config.save()
        except OSError as e:
            raise HTTPException(status_code=500, detail=f"Could not save settings: {e}")

        if supervisor.status().is_running:
            output.notice("Settings saved. Please restart the application for all changes to take effect.")
        else:
            output.notice("Settings saved.")
        return config.to_dict()

    @app.post("/api/settings/reset")
    async def reset_settings():
        """Restore default settings and save them."""
        config.reset()
        try:
            config.save()
        except OSError as e:
            raise HTTPException(status_code=500, detail=f"Could not save settings: {e}")
        output.notice("Settings reset to defaults.")
        return config.to_dict()

    return app
