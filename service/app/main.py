import asyncio
from typing import Literal, Optional

from fastapi import FastAPI, Request, Header, HTTPException
from pydantic import BaseModel

from app.config import get_settings
from app.telegram_bot.bot import get_runtime, handle_telegram_update, initialize_bot, shutdown_bot
from app.telegram_bot.logging_config import bot_logger as logger

app = FastAPI(
    title="West Sant Transportation Bot",
    description="Telegram registration and notification bot for volunteer transportation",
    version="0.1.0"
)


# Lifecycle events
@app.on_event("startup")
async def startup_event():
    """Initialize bot on startup."""
    logger.info("[STARTUP] Initializing Telegram bot...")
    await initialize_bot()
    logger.info("[STARTUP] Bot ready")


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown bot on application shutdown."""
    logger.info("[SHUTDOWN] Shutting down Telegram bot...")
    await shutdown_bot()
    logger.info("[SHUTDOWN] Bot stopped")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    settings = get_settings()
    return {
        "status": "ok",
        "environment": settings.environment,
        "bot_mode": settings.bot_mode,
        "version": "0.1.0"
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "West Sant Transportation Bot",
        "docs": "/docs"
    }


# Telegram webhook endpoint
@app.post("/telegram/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str = Header(None)
):
    """
    Webhook endpoint for Telegram updates.

    Telegram sends updates here when messages arrive.
    """
    settings = get_settings()

    # Verify secret token if configured
    if settings.telegram_webhook_secret:
        if x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
            raise HTTPException(status_code=403, detail="Invalid secret token")

    update_data = await request.json()

    # Handle update in background (fire-and-forget for fast 200 OK)
    asyncio.create_task(handle_telegram_update(update_data))

    return {"ok": True}


def _check_notifications_secret(secret: Optional[str]) -> None:
    settings = get_settings()
    if not settings.notifications_secret:
        raise HTTPException(status_code=503, detail="Notifications are not configured")
    if secret != settings.notifications_secret:
        raise HTTPException(status_code=403, detail="Invalid secret")


class DashboardNotification(BaseModel):
    message: str
    airports: Optional[list[str]] = None


@app.post("/notifications/dashboard")
async def dashboard_notification(
    body: DashboardNotification,
    x_notifications_secret: str = Header(None)
):
    """Broadcast a message to dashboard users with a linked Telegram chat."""
    _check_notifications_secret(x_notifications_secret)

    delivered = await get_runtime().notifications.send_dashboard_notification(
        body.message, airports=body.airports
    )
    return {"ok": True, "delivered": delivered}


class FlightNotification(BaseModel):
    flight_id: str
    event: Literal[
        "added", "updated", "confirmation", "checkin_reminder", "pickup_reminder", "dropoff_reminder"
    ]
    update_type: str = "changed"
    time_until: str = "2 hours"


@app.post("/notifications/flight")
async def flight_notification(
    body: FlightNotification,
    x_notifications_secret: str = Header(None)
):
    """Send the notifications for one flight event (added, updated, reminders)."""
    _check_notifications_secret(x_notifications_secret)

    runtime = get_runtime()
    flights = await runtime.repository.read_flights()
    flight = next((f for f in flights if f.id == body.flight_id), None)
    if flight is None:
        raise HTTPException(status_code=404, detail="Flight not found")

    notifications = runtime.notifications
    if body.event == "added":
        delivered = await notifications.send_flight_added(flight)
    elif body.event == "updated":
        delivered = await notifications.send_flight_updated(flight, body.update_type)
    elif body.event == "confirmation":
        delivered = await notifications.send_flight_confirmation(flight)
    elif body.event == "checkin_reminder":
        delivered = await notifications.send_checkin_reminder(flight)
    else:
        duty = body.event.removesuffix("_reminder")
        sent = await notifications.send_volunteer_reminder(flight, duty, body.time_until)
        delivered = 1 if sent else 0

    logger.info(f"Flight notification {body.event} for {flight.id}: delivered={delivered}")
    return {"ok": True, "delivered": delivered}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
