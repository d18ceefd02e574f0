# /iqflow/services/onboarding_actions.py

import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List
from urllib.parse import quote

from iqflow.config.settings import settings
from iqflow.services.action_service import (
    ActionCall,
    ActionDispatcher,
    ActionSpec,
    FailurePolicy,
    SnapshotMode,
)
from iqflow.services.platform_client import PlatformClient
from iqflow.workflows.errors import ActionError
from iqflow.workflows.replies import extract_invitees

# Handlers for every action referenced by the flows and trigger commands.
# Context written here is read by the next step's template on render.

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require(context: Dict[str, Any], key: str, action: str) -> Any:
    value = context.get(key)
    if not value:
        raise ActionError(f"{action} requires '{key}' in the onboarding context")
    return value


# ---------------- Anonymous session & account ---------------- #

async def create_anonymous_session(call: ActionCall):
    context = call.context
    if not context.get("sessionId"):
        session_id = f"anon_{_now_ms()}_{secrets.token_hex(4)}"
        expires_at = datetime.now(timezone.utc) + timedelta(hours=settings.anonymous_session_hours)
        call.driver.update_context({
            "sessionId": session_id,
            "chatId": f"chat_{session_id}",
            "sessionExpiry": expires_at.isoformat(),
            "anonymous": True,
        })
    session = await call.client.create_session()
    if session.get("sessionId"):
        call.driver.update_context({
            "sessionId": session["sessionId"],
            "chatId": session.get("chatId") or f"chat_{session['sessionId']}",
            "sessionExpiry": session.get("expiresAt") or call.context.get("sessionExpiry"),
        })


async def register_user_info(call: ActionCall):
    context = call.context
    email = _require(context, "email", call.name)
    details = {key: context[key] for key in ("firstName", "lastName", "phoneNumber") if context.get(key)}
    body = await call.client.register(email, context.get("sessionId"), **details)
    if body.get("userId"):
        call.driver.update_context({"userId": body["userId"]})


async def validate_otp(call: ActionCall):
    context = call.context
    email = _require(context, "email", call.name)
    otp = _require(context, "otp", call.name)
    body = await call.client.verify_otp(email, otp)
    profile_key = body.get("profileKey")
    if not profile_key:
        profile_key = (await call.client.create_profile(email)).get("profileKey")
    if not profile_key:
        raise ActionError("OTP accepted but no profile key was issued")
    call.driver.update_context({"profileKey": profile_key, "emailVerified": True})


async def send_password_reset(call: ActionCall):
    email = _require(call.context, "email", call.name)
    call.driver.update_context({"pendingResetEmail": email})
    await call.client.send_password_reset(email)


async def create_account(call: ActionCall):
    email = _require(call.context, "email", call.name)
    call.driver.update_context({
        "accountCreated": True,
        "resetUrl": f"/reset?email={quote(email)}",
        "completedAt": datetime.now(timezone.utc).isoformat(),
    })
    await call.client.send_password_reset(email)


async def skip_account(call: ActionCall):
    call.driver.update_context({
        "accountCreated": False,
        "sessionSaved": True,
        "completedAt": datetime.now(timezone.utc).isoformat(),
    })


async def auto_login(call: ActionCall):
    context = call.context
    call.driver.update_context({"completedAt": datetime.now(timezone.utc).isoformat()})
    if context.get("email") and context.get("password"):
        body = await call.client.login(context["email"], context["password"])
        if body.get("userId"):
            call.driver.update_context({"userId": body["userId"]})


async def transfer_session(call: ActionCall):
    context = call.context
    anon_session_id = _require(context, "sessionId", call.name)
    user_id = context.get("userId")
    if not user_id:
        me = await call.client.get_current_user()
        user_id = me.get("id") or me.get("email") or context.get("email")
    body = await call.client.transfer_session(anon_session_id, anon_session_id, user_id, context.get("chatId"))
    call.driver.update_context({
        "sessionId": body.get("newSessionId") or anon_session_id,
        "chatId": body.get("chatId") or context.get("chatId"),
        "anonymous": False,
    })


# ---------------- Devices & profiles ---------------- #

def _device_context(body: Dict[str, Any], mode: str) -> Dict[str, Any]:
    device_id = body.get("deviceId")
    if not device_id:
        raise ActionError("Device spawn returned no device id")
    return {
        "deviceId": device_id,
        "mode": mode,
        "mqttConnection": {
            "brokerEndpoint": body.get("brokerEndpoint"),
            "brokerPort": body.get("brokerPort"),
            "topic": body.get("topic"),
            "username": body.get("username"),
            "password": body.get("password"),
            "sampleSchema": body.get("sampleSchema") or {},
        },
    }


async def spawn_demo_device(call: ActionCall):
    context = call.context
    profile_key = _require(context, "profileKey", call.name)
    body = await call.client.spawn_device(
        profile_key, "demo", session_id=context.get("sessionId"), session_expiry=context.get("sessionExpiry")
    )
    call.driver.update_context(_device_context(body, "demo"))


async def spawn_live_device(call: ActionCall):
    context = call.context
    profile_key = _require(context, "profileKey", call.name)
    config = call.payload_dict().get("config") or context.get("profileConfig") or context.get("machineDetails") or {}
    body = await call.client.spawn_device(
        profile_key, "live", session_id=context.get("sessionId"), session_expiry=context.get("sessionExpiry"), config=config
    )
    call.driver.update_context(_device_context(body, "live"))


async def validate_schema(call: ActionCall):
    context = call.context
    sample = call.payload_dict().get("sample") or (context.get("mqttConnection") or {}).get("sampleSchema") or {}
    body = await call.client.validate_schema(context.get("deviceId"), sample)
    if body.get("valid") is False:
        raise ActionError(f"Schema validation failed: {body.get('errors') or 'invalid sample'}")
    call.driver.update_context({"schemaValidated": True})


async def create_new_profile(call: ActionCall):
    context = call.context
    email = _require(context, "email", call.name)
    config = call.payload_dict().get("profileConfig") or context.get("profileConfig")
    body = await call.client.create_profile(email, config)
    if not body.get("profileKey"):
        raise ActionError("Profile creation returned no profile key")
    call.driver.update_context({"profileKey": body["profileKey"]})


async def show_connection_details(call: ActionCall):
    _require(call.context, "mqttConnection", call.name)


async def show_dashboard(call: ActionCall):
    call.driver.update_context({"dashboardShown": True})


async def show_completion(call: ActionCall):
    call.driver.update_context({"onboardingComplete": True})


async def no_op(call: ActionCall):
    logger.debug(f"Action '{call.name}' has no side effect")


# ---------------- Users, notifications, tickets ---------------- #

async def add_users(call: ActionCall):
    payload = call.payload
    users: List[Dict[str, str]] = []
    if isinstance(payload, dict) and payload.get("users"):
        users = payload["users"]
    elif isinstance(payload, dict) and payload.get("invitees"):
        users = extract_invitees(payload["invitees"])
    elif isinstance(payload, str):
        users = extract_invitees(payload)
    if not users:
        users = call.context.get("invitedUsers") or []
    if not users:
        raise ActionError("No users provided to invite")
    call.driver.update_context({
        "invitedUsers": users,
        "invitedEmails": ", ".join(user["email"] for user in users),
    })
    body = await call.client.invite_users(users)
    call.driver.update_context({"invitationCount": body.get("count", len(users))})


async def subscribe_notifications(call: ActionCall):
    context = call.context
    call.driver.update_context({"notificationsEnabled": True})
    await call.client.subscribe_notifications(context.get("email"), context.get("deviceId"))


async def create_test_ticket(call: ActionCall):
    call.driver.update_context({"testTicketId": f"T-{_now_ms()}"})
    body = await call.client.generate_sample_ticket(severity="Warning")
    if body.get("ticketId"):
        call.driver.update_context({"testTicketId": body["ticketId"]})


async def assign_ticket(call: ActionCall):
    params = call.payload_dict()
    ticket_id = params.get("ticket", "").upper()
    assignee = params.get("assignee")
    if not ticket_id or not assignee:
        raise ActionError("Ticket assignment needs a ticket id and an assignee")
    call.driver.update_context({"assignedTicketId": ticket_id, "assignedTo": assignee})
    ticket = await call.client.update_ticket(ticket_id, {"owner": assignee})
    if not ticket:
        raise ActionError(f"Ticket {ticket_id} was not found")


def _ticket_line(ticket: Dict[str, Any]) -> str:
    return f"• **{ticket.get('related', '?')}**: {ticket.get('summary', '')} ({ticket.get('status', 'New')})"


async def list_recent_tickets(call: ActionCall):
    tickets = await call.client.list_tickets(page_size=5)
    if tickets:
        summary = "Here are the recent tickets:\n\n" + "\n".join(_ticket_line(t) for t in tickets)
    else:
        summary = "You don't have any recent tickets."
    call.driver.update_context({"recentTickets": tickets, "recentTicketSummary": summary})


def _merge_users(*groups: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged: Dict[str, Dict[str, Any]] = {}
    for group in groups:
        for user in group:
            email = user.get("email") if isinstance(user, dict) else None
            if email and email not in merged:
                merged[email] = user
    return list(merged.values())


def _user_list(users: List[Dict[str, Any]]) -> str:
    if not users:
        return "No one yet. Invite a teammate first, e.g. \"Invite bob@plant.com\"."
    return "\n".join(f"• {u.get('name') or u['email'].split('@')[0]} ({u['email']}) - {u.get('role') or 'User'}" for u in users)


async def list_assignable_users(call: ActionCall):
    # Invited users are listed even when the collaborator lookup fails.
    invited = _merge_users(call.context.get("invitedUsers") or [])
    call.driver.update_context({"assignableUsers": invited, "assignableUserList": _user_list(invited)})
    collaborators = await call.client.get_collaborators()
    merged = _merge_users(collaborators, invited)
    call.driver.update_context({"assignableUsers": merged, "assignableUserList": _user_list(merged)})


async def simulate_fault(call: ActionCall):
    mode = call.context.get("mode") or "demo"
    if mode != "demo":
        raise ActionError("Faults can only be simulated on demo machines")
    call.driver.update_context({"faultSimulated": True})


# ---------------- Dashboard & analytics commands ---------------- #

CHANNEL_ALIASES = {
    "temp": "Temperature",
    "heat": "Temperature",
    "vib": "Vibration",
    "press": "Pressure",
    "gyro": "Gyro",
    "speed": "Speed",
}


def normalize_channel(requested: str) -> str:
    """Maps loose requests ("temp graphs", "vibration sensor") to a channel name."""
    lowered = requested.lower()
    for alias, channel in CHANNEL_ALIASES.items():
        if alias in lowered:
            return channel
    return "Speed"


async def switch_graph_channel(call: ActionCall):
    channel = normalize_channel(call.payload_dict().get("channel") or "")
    await call.client.switch_channel(call.context.get("deviceId"), channel)
    call.driver.update_context({"graphChannel": channel})


async def query_metrics(call: ActionCall):
    body = await call.client.query_metrics(call.context.get("deviceId"), "vibration,temperature", window="7d")
    call.driver.update_context({"lastMetricsWindow": "7d", "metricsSummary": body.get("summary", "")})


async def compute_correlation(call: ActionCall):
    body = await call.client.compute_correlation(call.context.get("deviceId"), ["vibration", "cycle_duration"])
    call.driver.update_context({"correlation": body.get("correlation")})


async def forecast_maintenance(call: ActionCall):
    body = await call.client.forecast_maintenance(call.context.get("deviceId"))
    call.driver.update_context({
        "predictedMaintenanceInDays": body.get("predictedInDays"),
        "predictedMaintenanceDate": body.get("date"),
    })


async def explain_health_drivers(call: ActionCall):
    body = await call.client.explain_health_drivers(call.context.get("deviceId"))
    drivers = body.get("drivers") or []
    call.driver.update_context({
        "healthDrivers": drivers,
        "healthDriverNames": ", ".join(str(d.get("name", d)) if isinstance(d, dict) else str(d) for d in drivers),
    })


async def compare_lines(call: ActionCall):
    body = await call.client.compare_devices(["line-a", "line-b"], metric="vibration")
    call.driver.update_context({"comparisonSummary": body.get("summary")})


HARD, SOFT = FailurePolicy.HARD, FailurePolicy.SOFT

ONBOARDING_ACTIONS: List[ActionSpec] = [
    ActionSpec("create-anonymous-session", create_anonymous_session, SOFT),
    ActionSpec("register-user-info", register_user_info, HARD),
    ActionSpec("validate-otp", validate_otp, HARD, SnapshotMode.SAVE),
    ActionSpec("send-password-reset", send_password_reset, SOFT),
    ActionSpec("spawn-demo-device", spawn_demo_device, HARD, SnapshotMode.SAVE),
    ActionSpec("spawn-live-device", spawn_live_device, HARD, SnapshotMode.SAVE),
    ActionSpec("validate-schema", validate_schema, HARD),
    ActionSpec("create-account", create_account, SOFT, SnapshotMode.SAVE),
    ActionSpec("skip-account", skip_account, SOFT, SnapshotMode.SAVE),
    ActionSpec("auto-login", auto_login, SOFT, SnapshotMode.HANDOFF, handoff_flow="post-login"),
    ActionSpec("transfer-session", transfer_session, SOFT),
    ActionSpec("show-dashboard", show_dashboard, SOFT),
    ActionSpec("add-users", add_users, SOFT),
    ActionSpec("invite-users", add_users, HARD),
    ActionSpec("subscribe-notifications", subscribe_notifications, SOFT),
    ActionSpec("create-test-ticket", create_test_ticket, SOFT),
    ActionSpec("assign-ticket", assign_ticket, HARD),
    ActionSpec("list-recent-tickets", list_recent_tickets, HARD),
    ActionSpec("list-assignable-users", list_assignable_users, SOFT),
    ActionSpec("simulate-fault", simulate_fault, HARD),
    ActionSpec("show-completion", show_completion, SOFT, SnapshotMode.CLEAR),
    ActionSpec("show-nudges", no_op, SOFT),
    ActionSpec("show-profile-selection", no_op, SOFT),
    ActionSpec("show-payment-widget", no_op, SOFT),
    ActionSpec("create-new-profile", create_new_profile, HARD, SnapshotMode.SAVE),
    ActionSpec("show-connection-details", show_connection_details, HARD),
    ActionSpec("switch-graph-channel", switch_graph_channel, HARD),
    ActionSpec("query-metrics", query_metrics, HARD),
    ActionSpec("compute-correlation", compute_correlation, HARD),
    ActionSpec("forecast-maintenance", forecast_maintenance, HARD),
    ActionSpec("explain-health-drivers", explain_health_drivers, HARD),
    ActionSpec("compare-lines", compare_lines, HARD),
]


def build_dispatcher(client: PlatformClient) -> ActionDispatcher:
    return ActionDispatcher(client, ONBOARDING_ACTIONS)
