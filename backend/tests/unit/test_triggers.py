# backend/tests/unit/test_triggers.py
import pytest

from iqflow.workflows.definitions import FLOWS
from iqflow.workflows.errors import FlowConfigurationError
from iqflow.workflows.triggers import Command, MatchKind, Trigger, TriggerTable, default_trigger_table


@pytest.fixture
def table():
    return default_trigger_table(FLOWS)


@pytest.mark.parametrize("text", ["Show connection details", "  Show connection details "])
def test_exact_match_ignores_surrounding_whitespace(table, text):
    match = table.match(text)
    assert match.command.name == "show-connection-details"


def test_exact_match_is_case_sensitive(table):
    assert table.match("show connection details") is None
    assert table.match("SHOW CONNECTION DETAILS") is None


def test_exact_match_does_not_match_substrings(table):
    assert table.match("please show connection details now") is None


def test_contains_match(table):
    match = table.match("When is the next maintenance date for press 4?")
    assert match.command.name == "forecast-maintenance"


def test_regex_captures_named_groups(table):
    match = table.match("Change the graphs to vibration ")
    assert match.command.name == "switch-channel"
    assert match.params == {"channel": "vibration"}


def test_flow_start_target_resolves_flow_and_step(table):
    match = table.match("I want to add another machine")
    assert match.command is None
    assert (match.flow, match.step) == ("logged-in", "profile-selection-prompt")


def test_flow_start_skipped_while_flow_active(table):
    assert table.match("onboard a machine", flow_active=True) is None


def test_commands_still_match_while_flow_active(table):
    assert table.match("Create a test ticket", flow_active=True).command.name == "create-test-ticket"


@pytest.mark.parametrize("text", [
    "Hello, my email is ada@factory.io",
    "change the config to send",
    "Invite bob@plant.com",
    "what is the next maintenance date?",
])
def test_only_exact_rules_match_while_flow_active(table, text):
    assert table.match(text) is not None
    assert table.match(text, flow_active=True) is None


@pytest.mark.parametrize("text,command,params", [
    ("Assign T-123 to Alice", "assign-ticket", {"ticket": "T-123", "assignee": "Alice"}),
    ("please assign ticket t-0968 to Devon Lane ", "assign-ticket", {"ticket": "t-0968", "assignee": "Devon Lane"}),
    ("Invite bob@plant.com and carol@plant.com", "invite-users", {"invitees": "bob@plant.com and carol@plant.com"}),
    ("I'd like to invite my team", "invite-form", {}),
    ("I see the ticket", "ticket-seen", {}),
    ("show me recent tickets", "recent-tickets", {}),
    ("Open a new ticket", "draft-ticket", {}),
    ("simulate a fault please", "simulate-fault", {}),
    ("show me users", "show-users", {}),
    ("who can I assign this to", "show-users", {}),
    ("I want to onboard another machine", "restart-onboarding", {}),
])
def test_dashboard_commands(table, text, command, params):
    match = table.match(text)
    assert match.command.name == command
    assert match.params == params


def test_first_matching_rule_wins(table):
    # also matches the greeting rule, which is listed last
    match = table.match("Hi, when is the next maintenance date?")
    assert match.trigger.target == "forecast-maintenance"
    assert table.match("hello there").command.name == "help"


@pytest.mark.parametrize("text", ["", "   ", "completely unrelated"])
def test_no_match(table, text):
    assert table.match(text) is None


def test_flow_target_defaults_to_entry_step():
    table = TriggerTable([Trigger(kind=MatchKind.EXACT, phrase="start demo", target="start:non-login")], [], FLOWS)
    match = table.match("start demo")
    assert (match.flow, match.step) == ("non-login", "user-info-prompt")


@pytest.mark.parametrize("trigger", [
    Trigger(kind=MatchKind.EXACT, phrase="go", target="start:no-such-flow"),
    Trigger(kind=MatchKind.EXACT, phrase="go", target="start:non-login:no-such-step"),
    Trigger(kind=MatchKind.EXACT, phrase="go", target="no-such-command"),
    Trigger(kind=MatchKind.REGEX, phrase="(unclosed", target="help"),
])
def test_invalid_rules_fail_when_table_is_built(trigger):
    with pytest.raises(FlowConfigurationError):
        TriggerTable([trigger], [Command(name="help", reply="hi")], FLOWS)
