"""
CLI entrypoint for the VEX session client.
"""
import typer
import asyncio
import json

from vex_client.client.orchestrator import SessionOrchestrator
from vex_client.client.outbox import PersistentOutbox
from vex_client.client.visualizer import Visualizer
from vex_client.shared.config import settings
from vex_client.shared.log_config import setup_logging

app = typer.Typer(help="VEX session client CLI")


@app.callback()
def main(
    log_level: str = typer.Option(None, help="Override VEX_LOG_LEVEL"),
    log_file: str = typer.Option(None, help="Also write logs to this file"),
):
    setup_logging(log_level or settings.LOG_LEVEL, log_file)


@app.command()
def connect(
    token: str = typer.Option(None, help="Existing session UUID to resume"),
    duration: float = typer.Option(300.0, help="How long to keep the session open, in seconds"),
    no_push: bool = typer.Option(False, "--no-push", help="Use HTTP polling instead of the push socket"),
):
    """Open a session and show it on the rich dashboard."""
    config = settings.client_config()
    if token:
        config.token = token
    if no_push:
        config.push.enabled = False

    async def _run():
        outbox = PersistentOutbox(settings.outbox_config())
        client = SessionOrchestrator(config, outbox=outbox)
        outbox.start()
        try:
            await Visualizer(client).run(duration)
        finally:
            await client.destroy()
            outbox.destroy()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass


@app.command("webhook-server")
def webhook_server(
    host: str = typer.Option(None, help="Bind address (default VEX_WEBHOOK_HOST)"),
    port: int = typer.Option(None, help="Port (default VEX_WEBHOOK_PORT)"),
    token: list[str] = typer.Option([], help="Session UUID to start and route webhooks to; repeatable"),
    verbose: bool = typer.Option(False, help="Log every received webhook"),
):
    """Start the FastAPI webhook receiver using Uvicorn."""
    import uvicorn
    from vex_client.server.main import create_app

    if not settings.BACKEND_URL:
        typer.echo("VEX_BACKEND_URL is not set; the backend will not know where to send webhooks.")

    base = settings.client_config()
    configs = [base.model_copy(update={"token": t}) for t in token]
    fastapi_app = create_app(
        session_configs=configs,
        outbox=PersistentOutbox(settings.outbox_config()),
        verbose=verbose,
    )
    uvicorn.run(
        fastapi_app,
        host=host or settings.WEBHOOK_HOST,
        port=port or settings.WEBHOOK_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


@app.command()
def outbox(
    session: str = typer.Option(None, help="Only show pending operations for this session"),
    clear: bool = typer.Option(False, "--clear", help="Drop every persisted operation"),
):
    """Inspect the persisted outbox."""
    box = PersistentOutbox(settings.outbox_config())
    if clear:
        box.clear_all()
        box.save()
        typer.echo(f"Cleared {box.path}")
        return
    if session:
        for op in box.get_pending(session):
            typer.echo(json.dumps(op.model_dump(mode="json")))
        return
    typer.echo(box.get_stats().model_dump_json(indent=2))


if __name__ == "__main__":
    app()
