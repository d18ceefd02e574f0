# backend/tests/unit/test_actions.py
import pytest

from iqflow.services.action_service import (
    ActionDispatcher,
    ActionSpec,
    FailurePolicy,
    OutcomeStatus,
)
from iqflow.services.onboarding_actions import normalize_channel
from iqflow.workflows.definitions import FLOWS
from iqflow.workflows.engine import FlowDriver
from iqflow.workflows.errors import ActionError, RemoteCallError, UnknownActionError


@pytest.fixture
def driver():
    return FlowDriver(FLOWS, "non-login")


# --- Failure policies ---

@pytest.mark.asyncio
async def test_remote_rejection_fails_hard_action(platform, driver):
    async def handler(call):
        raise RemoteCallError("/api/device", "boom", status_code=500)

    dispatcher = ActionDispatcher(platform, [ActionSpec("spawn", handler, FailurePolicy.HARD)])
    outcome = await dispatcher.dispatch("spawn", driver)

    assert outcome.status == OutcomeStatus.HARD_FAILED
    assert not outcome.ok
    assert "boom" in outcome.error


@pytest.mark.asyncio
async def test_remote_rejection_is_absorbed_by_soft_action(platform, driver):
    async def handler(call):
        call.driver.update_context({"notificationsEnabled": True})
        raise RemoteCallError("/api/v2/notifications/subscribe", "down")

    dispatcher = ActionDispatcher(platform, [ActionSpec("subscribe", handler, FailurePolicy.SOFT)])
    outcome = await dispatcher.dispatch("subscribe", driver)

    assert outcome.status == OutcomeStatus.SOFT_FAILED
    assert outcome.ok
    assert driver.get_context()["notificationsEnabled"] is True


@pytest.mark.asyncio
async def test_action_error_fails_even_soft_actions(platform, driver):
    async def handler(call):
        raise ActionError("no users")

    dispatcher = ActionDispatcher(platform, [ActionSpec("add-users", handler, FailurePolicy.SOFT)])
    outcome = await dispatcher.dispatch("add-users", driver)
    assert outcome.status == OutcomeStatus.HARD_FAILED


@pytest.mark.asyncio
async def test_unknown_action_is_a_configuration_error(dispatcher, driver):
    with pytest.raises(UnknownActionError):
        await dispatcher.dispatch("launch-rocket", driver)


@pytest.mark.asyncio
async def test_unexpected_exceptions_propagate(platform, driver):
    async def handler(call):
        raise KeyError("bug")

    dispatcher = ActionDispatcher(platform, [ActionSpec("buggy", handler)])
    with pytest.raises(KeyError):
        await dispatcher.dispatch("buggy", driver)


# --- Onboarding action handlers ---

@pytest.mark.asyncio
async def test_validate_otp_stores_profile_key(dispatcher, driver, platform):
    driver.update_context({"email": "ada@factory.io", "otp": "123456"})
    outcome = await dispatcher.dispatch("validate-otp", driver)

    assert outcome.status == OutcomeStatus.OK
    platform.verify_otp.assert_awaited_once_with("ada@factory.io", "123456")
    assert driver.get_context()["profileKey"] == "profile_abc"


@pytest.mark.asyncio
async def test_validate_otp_creates_profile_when_none_returned(dispatcher, driver, platform):
    platform.verify_otp.return_value = {"success": True}
    driver.update_context({"email": "ada@factory.io", "otp": "123456"})
    await dispatcher.dispatch("validate-otp", driver)
    assert driver.get_context()["profileKey"] == "profile_new"


@pytest.mark.asyncio
async def test_spawn_demo_device_writes_connection_before_returning(dispatcher, driver, platform):
    driver.update_context({"profileKey": "profile_abc", "sessionId": "anon_1"})
    outcome = await dispatcher.dispatch("spawn-demo-device", driver)

    assert outcome.ok
    context = driver.get_context()
    assert context["deviceId"] == "dev_123"
    assert context["mode"] == "demo"
    assert context["mqttConnection"]["brokerPort"] == 8883
    assert platform.spawn_device.await_args.args[:2] == ("profile_abc", "demo")


@pytest.mark.asyncio
async def test_spawn_without_profile_key_fails_hard(dispatcher, driver, platform):
    outcome = await dispatcher.dispatch("spawn-live-device", driver)
    assert outcome.status == OutcomeStatus.HARD_FAILED
    platform.spawn_device.assert_not_awaited()


@pytest.mark.asyncio
async def test_spawn_live_device_uses_payload_config(dispatcher, driver, platform):
    driver.update_context({"profileKey": "p", "profileConfig": {"profileName": "old"}})
    await dispatcher.dispatch("spawn-live-device", driver, {"config": {"profileName": "new"}})
    assert platform.spawn_device.await_args.kwargs["config"] == {"profileName": "new"}


@pytest.mark.asyncio
async def test_create_test_ticket_falls_back_to_local_id(dispatcher, driver, platform):
    platform.generate_sample_ticket.side_effect = RemoteCallError("/api/v2/tickets/generate-sample", "down")
    outcome = await dispatcher.dispatch("create-test-ticket", driver)

    assert outcome.status == OutcomeStatus.SOFT_FAILED
    assert driver.get_context()["testTicketId"].startswith("T-")


@pytest.mark.asyncio
async def test_create_test_ticket_uses_remote_id(dispatcher, driver):
    await dispatcher.dispatch("create-test-ticket", driver)
    assert driver.get_context()["testTicketId"] == "T-4242"


@pytest.mark.asyncio
async def test_add_users_parses_free_text_payload(dispatcher, driver, platform):
    outcome = await dispatcher.dispatch("add-users", driver, "bob@plant.com, carol@plant.com")
    assert outcome.ok
    invited = platform.invite_users.await_args.args[0]
    assert [u["email"] for u in invited] == ["bob@plant.com", "carol@plant.com"]


@pytest.mark.asyncio
async def test_add_users_without_users_fails(dispatcher, driver):
    outcome = await dispatcher.dispatch("add-users", driver, {"unrelated": True})
    assert outcome.status == OutcomeStatus.HARD_FAILED


@pytest.mark.asyncio
async def test_create_anonymous_session_keeps_local_session_on_failure(dispatcher, driver, platform):
    platform.create_session.side_effect = RemoteCallError("/api/session", "down")
    outcome = await dispatcher.dispatch("create-anonymous-session", driver)

    assert outcome.status == OutcomeStatus.SOFT_FAILED
    context = driver.get_context()
    assert context["sessionId"].startswith("anon_")
    assert context["chatId"] == f"chat_{context['sessionId']}"
    assert context["anonymous"] is True


@pytest.mark.asyncio
async def test_create_anonymous_session_adopts_server_session(dispatcher, driver):
    await dispatcher.dispatch("create-anonymous-session", driver)
    assert driver.get_context()["sessionId"] == "srv_session_1"


@pytest.mark.asyncio
async def test_transfer_session_swaps_ids(dispatcher, driver, platform):
    driver.update_context({"sessionId": "anon_1", "chatId": "chat_anon_1", "userId": "user_1"})
    await dispatcher.dispatch("transfer-session", driver)

    platform.transfer_session.assert_awaited_once_with("anon_1", "anon_1", "user_1", "chat_anon_1")
    context = driver.get_context()
    assert context["sessionId"] == "auth_session_1"
    assert context["anonymous"] is False


@pytest.mark.asyncio
async def test_validate_schema_rejection_fails_hard(dispatcher, driver, platform):
    platform.validate_schema.return_value = {"valid": False, "errors": ["missing timestamp"]}
    outcome = await dispatcher.dispatch("validate-schema", driver)
    assert outcome.status == OutcomeStatus.HARD_FAILED
    assert "missing timestamp" in outcome.error


@pytest.mark.asyncio
async def test_show_connection_details_requires_connection(dispatcher, driver):
    assert not (await dispatcher.dispatch("show-connection-details", driver)).ok
    driver.update_context({"mqttConnection": {"topic": "t"}})
    assert (await dispatcher.dispatch("show-connection-details", driver)).ok


@pytest.mark.asyncio
async def test_invite_users_reads_invitees_from_command_params(dispatcher, driver, platform):
    outcome = await dispatcher.dispatch("invite-users", driver, {"invitees": "bob@plant.com and carol@plant.com"})

    assert outcome.ok
    assert driver.get_context()["invitedEmails"] == "bob@plant.com, carol@plant.com"
    assert [u["role"] for u in platform.invite_users.await_args.args[0]] == ["Viewer", "Viewer"]


@pytest.mark.asyncio
async def test_invite_users_rejection_fails_hard(dispatcher, driver, platform):
    platform.invite_users.side_effect = RemoteCallError("/api/v2/user/invite", "quota reached")
    outcome = await dispatcher.dispatch("invite-users", driver, {"invitees": "bob@plant.com"})
    assert outcome.status == OutcomeStatus.HARD_FAILED


@pytest.mark.asyncio
async def test_assign_ticket_updates_owner(dispatcher, driver, platform):
    outcome = await dispatcher.dispatch("assign-ticket", driver, {"ticket": "t-1044", "assignee": "Alice"})

    assert outcome.ok
    platform.update_ticket.assert_awaited_once_with("T-1044", {"owner": "Alice"})
    context = driver.get_context()
    assert (context["assignedTicketId"], context["assignedTo"]) == ("T-1044", "Alice")


@pytest.mark.asyncio
async def test_assign_unknown_ticket_fails_hard(dispatcher, driver, platform):
    platform.update_ticket.side_effect = RemoteCallError("/api/tickets", "Ticket not found", status_code=404)
    outcome = await dispatcher.dispatch("assign-ticket", driver, {"ticket": "T-9", "assignee": "Alice"})

    assert outcome.status == OutcomeStatus.HARD_FAILED
    assert driver.get_context()["assignedTicketId"] == "T-9"


@pytest.mark.asyncio
async def test_list_recent_tickets_summarises_each_ticket(dispatcher, driver):
    await dispatcher.dispatch("list-recent-tickets", driver)
    summary = driver.get_context()["recentTicketSummary"]
    assert "• **T-1044**: Coolant temperature drift detected (Diagnosing)" in summary
    assert "• **T-0968**: MQTT heartbeat loss (In Progress)" in summary


@pytest.mark.asyncio
async def test_list_recent_tickets_when_there_are_none(dispatcher, driver, platform):
    platform.list_tickets.return_value = []
    await dispatcher.dispatch("list-recent-tickets", driver)
    assert driver.get_context()["recentTicketSummary"] == "You don't have any recent tickets."


@pytest.mark.asyncio
async def test_assignable_users_merge_collaborators_and_invitees(dispatcher, driver):
    driver.update_context({"invitedUsers": [
        {"name": "bob", "email": "bob@plant.com", "role": "Viewer"},
        {"name": "Jane", "email": "jcooper@industrialiq.ai", "role": "Viewer"},
    ]})
    await dispatcher.dispatch("list-assignable-users", driver)

    users = driver.get_context()["assignableUsers"]
    assert [u["email"] for u in users] == ["jcooper@industrialiq.ai", "bob@plant.com"]
    assert users[0]["role"] == "Manager"


@pytest.mark.asyncio
async def test_assignable_users_keep_invitees_when_lookup_fails(dispatcher, driver, platform):
    platform.get_collaborators.side_effect = RemoteCallError("/api/state", "down")
    driver.update_context({"invitedUsers": [{"name": "bob", "email": "bob@plant.com", "role": "Viewer"}]})

    outcome = await dispatcher.dispatch("list-assignable-users", driver)

    assert outcome.status == OutcomeStatus.SOFT_FAILED
    assert driver.get_context()["assignableUserList"] == "• bob (bob@plant.com) - Viewer"


@pytest.mark.asyncio
@pytest.mark.parametrize("mode,ok", [(None, True), ("demo", True), ("live", False)])
async def test_simulate_fault_only_on_demo_machines(dispatcher, driver, mode, ok):
    if mode:
        driver.update_context({"mode": mode})
    outcome = await dispatcher.dispatch("simulate-fault", driver)
    assert outcome.ok is ok
    assert driver.get_context().get("faultSimulated", False) is ok


@pytest.mark.parametrize("requested,channel", [
    ("temp graphs", "Temperature"),
    ("Vibration", "Vibration"),
    ("pressure sensor", "Pressure"),
    ("something else", "Speed"),
])
def test_normalize_channel(requested, channel):
    assert normalize_channel(requested) == channel
