import logging
from contextlib import asynccontextmanager

import telnyx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from app.runtime import Services, build_services
from app.services.sms_commands import SmsCommandHandler
from app.services.time_resolver import TimeExpressionResolver
from app.types.task_contract import (
    ParseTimeRequest,
    ParseTimeResponse,
    ReminderOffsetUpdate,
    TaskList,
    TaskOut,
    TaskUpdate,
    TaskWrite,
)
from app.utils.sms import SmsSender
from config import configure_logging, settings
from db.task_store import TaskNotFound, TaskTimeStore, UserNotFound

configure_logging()
_LOGGER = logging.getLogger(__name__)

# Configure telnyx public key
if settings.TELNYX_PUBLIC_KEY:
    telnyx.public_key = settings.TELNYX_PUBLIC_KEY


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with build_services() as services:
        app.state.services = services
        yield


app = FastAPI(lifespan=lifespan)


# --------------------------------------------
# Dependencies (overridable in tests)
# --------------------------------------------

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_resolver(services: Services = Depends(get_services)) -> TimeExpressionResolver:
    return services.resolver


def get_store(services: Services = Depends(get_services)) -> TaskTimeStore:
    return services.store


def get_commands(services: Services = Depends(get_services)) -> SmsCommandHandler:
    return services.commands


def get_sender(services: Services = Depends(get_services)) -> SmsSender:
    return services.sender


# --------------------------------------------
# Health
# --------------------------------------------

@app.get("/")
async def health():
    return {"status": "ok"}


# --------------------------------------------
# Time parsing (dashboard parse-as-you-type)
# --------------------------------------------

@app.post("/api/parse-time", response_model=ParseTimeResponse)
async def parse_time(
    body: ParseTimeRequest, resolver: TimeExpressionResolver = Depends(get_resolver)
) -> ParseTimeResponse:
    return resolver.parse_time(body)


# --------------------------------------------
# Task CRUD
# --------------------------------------------

async def _load_task(store: TaskTimeStore, task_id: str) -> TaskOut:
    task = await store.get_task(task_id)
    if task is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Task not found")
    return task


@app.post("/api/tasks", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_task(body: TaskWrite, store: TaskTimeStore = Depends(get_store)) -> TaskOut:
    try:
        return await store.create_task(
            body.user_id,
            body.content,
            time_type=body.time_type,
            time_value=body.time_value,
            reminder_offset=body.reminder_offset,
        )
    except UserNotFound:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "User not found")


@app.get("/api/tasks", response_model=TaskList)
async def list_tasks(user_id: str = Query(...), store: TaskTimeStore = Depends(get_store)) -> TaskList:
    return TaskList(tasks=await store.list_tasks(user_id))


@app.put("/api/tasks/{task_id}", response_model=TaskOut)
async def update_task(task_id: str, body: TaskUpdate, store: TaskTimeStore = Depends(get_store)) -> TaskOut:
    current = await _load_task(store, task_id)
    fields = body.model_fields_set
    try:
        if body.content is not None and "content" in fields:
            await store.update_content(task_id, body.content)
        if "time_type" in fields or "time_value" in fields:
            time_type = body.time_type or current.time_type
            if time_type == "none" and "time_type" not in fields and body.time_value:
                time_type = "scheduled"
            await store.write_time(
                task_id,
                time_type,
                body.time_value if "time_value" in fields else current.time_value,
                body.reminder_offset if "reminder_offset" in fields else current.reminder_offset,
            )
        elif "reminder_offset" in fields:
            await store.set_reminder_offset(task_id, body.reminder_offset)
    except TaskNotFound:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Task not found")
    return await _load_task(store, task_id)


@app.patch("/api/tasks/{task_id}/reminder", response_model=TaskOut)
async def update_reminder(
    task_id: str, body: ReminderOffsetUpdate, store: TaskTimeStore = Depends(get_store)
) -> TaskOut:
    try:
        await store.set_reminder_offset(task_id, body.reminder_offset)
    except TaskNotFound:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Task not found")
    return await _load_task(store, task_id)


@app.delete("/api/tasks/{task_id}")
async def delete_task(task_id: str, store: TaskTimeStore = Depends(get_store)):
    if not await store.delete_task(task_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Task not found")
    return {"success": True}


# --------------------------------------------
# Background task: handle inbound SMS and reply
# --------------------------------------------

async def reply_to_sms(commands: SmsCommandHandler, sender: SmsSender, from_num: str, text: str) -> None:
    try:
        reply = await commands.handle(from_num, text)
        await sender.send(from_num, reply)
    except Exception:  # noqa: BLE001
        # Don't bubble up; just log
        _LOGGER.exception("Handling SMS from %s failed", from_num)


@app.post("/v1/sms/telnyx", response_class=PlainTextResponse)
async def telnyx_webhook(
    request: Request,
    background: BackgroundTasks,
    commands: SmsCommandHandler = Depends(get_commands),
    sender: SmsSender = Depends(get_sender),
):
    raw_body = await request.body()
    sig = request.headers.get("telnyx-signature-ed25519")
    ts = request.headers.get("telnyx-timestamp")

    _LOGGER.debug("[Webhook] Raw incoming payload: %s", raw_body)
    try:
        if settings.TELNYX_PUBLIC_KEY:
            event = telnyx.Webhook.construct_event(raw_body.decode(), sig, ts)
            payload = event.data["payload"]
        else:  # dev mode: skip signature verification
            payload = (await request.json())["data"]["payload"]
    except Exception:  # noqa: BLE001
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Bad signature")

    # TelnyxObject -> dict if needed
    if hasattr(payload, "to_dict"):
        payload = payload.to_dict()

    if payload.get("type") == "ping":
        return PlainTextResponse("PONG")

    sender_info = payload.get("from") or payload.get("from_", {})
    if hasattr(sender_info, "to_dict"):
        sender_info = sender_info.to_dict()
    from_num = sender_info.get("phone_number")
    text = (payload.get("text") or "").strip()

    if not from_num or not text:
        return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)

    background.add_task(reply_to_sms, commands, sender, from_num, text)
    return PlainTextResponse("OK")
