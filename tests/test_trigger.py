import pytest

from matrixci.errors import EventPayloadError
from matrixci.model import ChangeAction, Event, EventKind
from matrixci.trigger import describe_event, evaluate, parse_event


class TestPushEvents:
    def test_watched_branch_is_eligible(self):
        assert evaluate(Event.push("master"), ["master"]) is True

    @pytest.mark.parametrize("ref", ["develop", "feature/x", "main", ""])
    def test_other_refs_are_not_eligible(self, ref):
        assert evaluate(Event.push(ref), ["master"]) is False

    def test_full_ref_name_matches_branch(self):
        assert evaluate(Event.push("refs/heads/master"), ["master"]) is True

    def test_configured_branch_set(self):
        assert evaluate(Event.push("release"), ["master", "release"]) is True


class TestChangeRequestEvents:
    @pytest.mark.parametrize("action", ["opened", "synchronized", "reopened", "marked_ready"])
    def test_ready_change_request_is_eligible(self, action):
        assert evaluate(Event.change_request(action, draft=False)) is True

    @pytest.mark.parametrize("action", ["opened", "synchronized", "reopened"])
    def test_draft_change_request_is_not_eligible(self, action):
        assert evaluate(Event.change_request(action, draft=True)) is False

    def test_marked_ready_is_eligible_regardless_of_draft_flag(self):
        assert evaluate(Event.change_request("marked_ready", draft=True)) is True
        assert evaluate(Event.change_request("marked_ready", draft=False)) is True

    def test_unknown_action_is_not_eligible(self):
        assert evaluate(Event.change_request("closed", draft=False)) is False

    def test_change_request_ignores_watched_branches(self):
        ev = Event.change_request("opened", ref="feature/x")
        assert evaluate(ev, ["master"]) is True


class TestParseEvent:
    def test_push_payload(self):
        ev = parse_event({"kind": "push", "ref": "master"})
        assert ev == Event(kind=EventKind.PUSH, ref="master")

    def test_change_request_payload(self):
        ev = parse_event({"kind": "change_request", "action": "synchronized", "draft": True})
        assert ev.kind == EventKind.CHANGE_REQUEST
        assert ev.action == ChangeAction.SYNCHRONIZED
        assert ev.draft is True

    @pytest.mark.parametrize(
        "payload, action",
        [
            ({"kind": "pull_request", "action": "synchronize"}, ChangeAction.SYNCHRONIZED),
            ({"kind": "change-request", "action": "ready_for_review", "draft": True}, ChangeAction.MARKED_READY),
        ],
    )
    def test_hosting_platform_aliases(self, payload, action):
        ev = parse_event(payload)
        assert ev.kind == EventKind.CHANGE_REQUEST
        assert ev.action == action

    def test_ready_for_review_alias_is_eligible_even_if_draft(self):
        ev = parse_event({"kind": "pull_request", "action": "ready_for_review", "draft": True})
        assert evaluate(ev) is True

    def test_unknown_action_is_kept_and_ineligible(self):
        ev = parse_event({"kind": "change_request", "action": "closed"})
        assert ev.action == "closed"
        assert evaluate(ev) is False

    @pytest.mark.parametrize(
        "payload",
        [
            {"kind": "tag", "ref": "v1"},
            {"kind": "push"},
            {"kind": "change_request"},
            {"ref": "master"},
        ],
    )
    def test_invalid_payloads(self, payload):
        with pytest.raises(EventPayloadError):
            parse_event(payload)


def test_describe_event():
    assert describe_event(Event.push("master")) == "push to master"
    assert describe_event(Event.change_request("opened", draft=True)) == "change_request opened (draft)"


def test_single_branch_given_as_a_string():
    assert evaluate(Event.push("main"), "main") is True
    assert evaluate(Event.push("m"), "main") is False
