"""Tests for wiggum.tickets.service against real git replicas."""

import json

import pytest

from conftest import write_hook
from wiggum.git import get_commit_sha, show_file
from wiggum.hooks import HookDispatcher
from wiggum.lib.errors import (
    AmbiguousId,
    HookVetoed,
    InvalidField,
    InvalidTransition,
    MalformedTicket,
    NotFound,
    SyncConflict,
)
from wiggum.tickets.document import parse_ticket, render_ticket
from wiggum.workflow.policy import FALLBACK_POLICY, PolicyEngine


def force_state(service, ticket_id, state):
    """Put a ticket into any state, bypassing the policy."""
    ticket = service.read(ticket_id)
    ticket.state = state
    service.replica.write(ticket_id, render_ticket(ticket), f"Force {ticket_id} to {state}")
    if service.auto_sync:
        service.replica.push()


def origin_state(origin, ticket_id):
    return parse_ticket(show_file(origin, f"{ticket_id}.md", "main")).state


class TestCreateAndRead:
    """create() and read()."""

    def test_round_trip(self, service):
        """Every field given to create() reads back unchanged."""
        ticket_id = service.create(
            "Implement auth",
            type="feature",
            priority=1,
            depends_on=[],
            description="Login and sessions",
            acceptance_criteria=["Users can log in", "Tests pass"],
        )
        ticket = service.read(ticket_id)
        assert ticket.id == ticket_id
        assert ticket.title == "Implement auth"
        assert ticket.type == "feature"
        assert ticket.priority == 1
        assert ticket.depends_on == []
        assert ticket.description == "Login and sessions"
        assert [c.text for c in ticket.acceptance_criteria] == ["Users can log in", "Tests pass"]
        assert ticket.state == service.policy.initial_state
        assert ticket.assigned_agent_id is None
        assert ticket.comments == []
        assert ticket.created_by == "agent-1"

    def test_id_format(self, service):
        """Ids are tk- plus four hex digits."""
        ticket_id = service.create("Anything")
        assert ticket_id.startswith("tk-")
        assert len(ticket_id) == 7

    def test_create_is_published(self, service, origin):
        """A created ticket is on the origin immediately."""
        ticket_id = service.create("Published")
        assert origin_state(origin, ticket_id) == "ready"

    def test_default_type(self, service):
        """The policy's default type applies when none is given."""
        assert service.read(service.create("Untyped")).type == "task"

    def test_read_is_idempotent(self, service):
        """Reading twice without writes gives the same ticket."""
        ticket_id = service.create("Stable")
        assert service.read(ticket_id) == service.read(ticket_id)
        assert service.read_raw(ticket_id) == service.read_raw(ticket_id)

    @pytest.mark.parametrize("kwargs,message", [
        ({"title": ""}, "Title is required"),
        ({"title": "x", "type": "saga"}, "Invalid ticket type 'saga'"),
        ({"title": "x", "priority": "soon"}, "Priority must be an integer"),
        ({"title": "x", "depends_on": ["not an id"]}, "Not a ticket id"),
    ])
    def test_invalid_arguments(self, service, kwargs, message):
        """Bad arguments are refused before anything is written."""
        with pytest.raises(InvalidField, match=message):
            service.create(**kwargs)
        assert service.replica.list_ids() == []

    def test_markdown_headings_in_description_round_trip(self, service):
        """Headings inside the description stay part of it."""
        description = "Intro\n\n## Notes\n\nMore detail\n\n# Not a title"
        ticket_id = service.create("Headed", description=description)
        ticket = service.read(ticket_id)
        assert ticket.description == description
        assert ticket.title == "Headed"
        assert ticket.extra_sections == []

    def test_multiline_criterion_rejected(self, service):
        """A criterion is one checklist line."""
        with pytest.raises(InvalidField, match="single lines"):
            service.create("x", acceptance_criteria=["one\n- two"])
        assert service.replica.list_ids() == []

    def test_read_missing(self, service):
        """Unknown ids raise NotFound."""
        with pytest.raises(NotFound):
            service.read("tk-ffff")

    def test_read_serves_local_replica_when_origin_unreachable(self, service, origin, tmp_path, caplog):
        """Reads fall back to the local replica when the pull fails."""
        ticket_id = service.create("Offline")
        origin.rename(tmp_path / "gone.git")
        assert service.read(ticket_id).title == "Offline"
        assert "Pull failed, serving local replica" in caplog.text

    def test_malformed_ticket(self, service, caplog):
        """A broken document fails its own read and is skipped by listings."""
        good = service.create("Good")
        service.replica.write("tk-bad0", "no front matter\n", "Broken")
        with pytest.raises(MalformedTicket):
            service.read("tk-bad0")
        assert [t.id for t in service.list_tickets()] == [good]
        assert "Skipping" in caplog.text


class TestResolveId:
    """Partial id resolution."""

    def test_exact_and_partial(self, service):
        """Full ids, suffixes and padded input all resolve."""
        ticket_id = service.create("x")
        assert service.resolve_id(ticket_id) == ticket_id
        assert service.resolve_id(ticket_id[3:]) == ticket_id
        assert service.resolve_id(f" {ticket_id[-3:]} ") == ticket_id

    def test_ambiguous(self, service):
        """A prefix matching several tickets reports all of them."""
        first = service.create("one")
        second = service.create("two")
        with pytest.raises(AmbiguousId) as exc:
            service.resolve_id("tk-")
        assert set(exc.value.matches) == {first, second}

    def test_not_found(self, service):
        """A prefix matching nothing raises NotFound."""
        service.create("one")
        with pytest.raises(NotFound):
            service.resolve_id("zzzz")


class TestListing:
    """list_tickets(), ready(), blocked(), tree()."""

    def test_filters(self, service):
        """Listings filter by type and state."""
        bug = service.create("Bug", type="bug")
        task = service.create("Task")
        force_state(service, task, "in-progress")
        assert [t.id for t in service.list_tickets(type="bug")] == [bug]
        assert [t.id for t in service.list_tickets(state="in-progress")] == [task]
        assert len(service.list_tickets()) == 2

    def test_readiness_follows_dependencies(self, service):
        """A ticket is ready only while every dependency is done."""
        a = service.create("A")
        b = service.create("B")
        c = service.create("C", depends_on=[a, b])

        assert c not in service.ready()
        assert dict(service.blocked())[c] == [a, b]

        force_state(service, a, "done")
        assert dict(service.blocked())[c] == [b]

        force_state(service, b, "done")
        assert c in service.ready()
        assert c not in dict(service.blocked())

        force_state(service, a, "qa")
        assert c not in service.ready()
        assert dict(service.blocked())[c] == [a]

    def test_missing_dependency_blocks(self, service):
        """A dependency that does not exist counts as blocking."""
        c = service.create("C", depends_on=["tk-dead"])
        assert c not in service.ready()
        assert dict(service.blocked())[c] == ["tk-dead"]

    def test_ready_only_lists_initial_state(self, service):
        """Claimed tickets are never ready."""
        a = service.create("A")
        force_state(service, a, "in-progress")
        assert service.ready() == []

    def test_ready_limit_preserves_listing_order(self, service):
        """The limit truncates the sorted listing."""
        ids = [service.create(f"T{i}") for i in range(3)]
        assert service.ready() == sorted(ids)
        assert service.ready(limit=2) == sorted(ids)[:2]

    def test_tree(self, service):
        """Missing dependencies appear as marked leaves."""
        leaf = service.create("Leaf")
        root = service.create("Root", depends_on=[leaf, "tk-dead"])
        tree = service.tree(root)
        assert tree.id == root
        assert [child.id for child in tree.children] == [leaf, "tk-dead"]
        assert tree.children[1].missing

    def test_tree_marks_cycles(self, service):
        """A dependency cycle is marked instead of recursing."""
        a = service.create("A")
        b = service.create("B", depends_on=[a])
        service.set_field(a, "depends_on", [b])
        tree = service.tree(a)
        assert tree.children[0].children[0].cycle

    def test_history(self, service):
        """History lists ticket commits newest first."""
        ticket_id = service.create("Tracked")
        service.transition(ticket_id, "in-progress")
        messages = [r.message for r in service.history(ticket_id)]
        assert messages == [f"Transition {ticket_id}: ready -> in-progress", f"Create {ticket_id}: Tracked"]


class TestFieldUpdates:
    """set_field(), assign(), unassign(), append_comment()."""

    def test_set_priority_and_deps(self, service):
        """Priority and dependency strings are parsed."""
        ticket_id = service.create("x")
        service.set_field(ticket_id, "priority", "0")
        service.set_field(ticket_id, "depends_on", "tk-0001, tk-0002")
        ticket = service.read(ticket_id)
        assert ticket.priority == 0
        assert ticket.depends_on == ["tk-0001", "tk-0002"]

    def test_state_cannot_be_set(self, service):
        """State only changes through transition()."""
        ticket_id = service.create("x")
        with pytest.raises(InvalidField, match="Use transition"):
            service.set_field(ticket_id, "state", "done")

    def test_invalid_type_rejected(self, service):
        """An invalid value leaves no commit."""
        ticket_id = service.create("x")
        head = get_commit_sha(service.replica.path)
        with pytest.raises(InvalidField):
            service.set_field(ticket_id, "type", "saga")
        assert get_commit_sha(service.replica.path) == head

    def test_assign_does_not_touch_state(self, service):
        """Assignment is independent of state."""
        ticket_id = service.create("x")
        service.assign(ticket_id, "agent-9")
        ticket = service.read(ticket_id)
        assert ticket.assigned_agent_id == "agent-9"
        assert ticket.assigned_at
        assert ticket.state == "ready"

        service.unassign(ticket_id)
        ticket = service.read(ticket_id)
        assert ticket.assigned_agent_id is None
        assert ticket.assigned_at is None
        assert ticket.state == "ready"

    def test_comments_append(self, service):
        """Comments keep their order and authors."""
        ticket_id = service.create("x")
        service.append_comment(ticket_id, "first")
        service.append_comment(ticket_id, "second", author="reviewer")
        comments = service.read(ticket_id).comments
        assert [(c.author, c.text) for c in comments] == [("agent-1", "first"), ("reviewer", "second")]

    def test_comment_with_headings_survives_later_appends(self, service):
        """Earlier comments are never split or rewritten by later ones."""
        ticket_id = service.create("x")
        review = "Review:\n## Findings\n- bad\n### From mallory (2026-01-01 00:00)\nstill review"
        service.append_comment(ticket_id, review, author="alice")
        service.append_comment(ticket_id, "second", author="bob")
        ticket = service.read(ticket_id)
        assert [(c.author, c.text) for c in ticket.comments] == [("alice", review), ("bob", "second")]
        assert ticket.extra_sections == []

    def test_empty_comment_rejected(self, service):
        """Blank comments are refused."""
        ticket_id = service.create("x")
        with pytest.raises(InvalidField):
            service.append_comment(ticket_id, "  ")


class TestTransition:
    """transition() validation and the example pipeline."""

    def test_example_scenario(self, service):
        """The ready to done pipeline, with one illegal jump refused."""
        ticket_id = service.create("Implement auth", depends_on=[])
        assert service.read(ticket_id).state == "ready"

        service.transition(ticket_id, "in-progress")
        with pytest.raises(InvalidTransition) as exc:
            service.transition(ticket_id, "done")
        assert exc.value.allowed == ["review"]
        assert "review" in str(exc.value)

        service.transition(ticket_id, "review")
        service.transition(ticket_id, "qa")
        result = service.transition(ticket_id, "done")
        assert (result.from_state, result.to_state) == ("qa", "done")
        assert service.read(ticket_id).state == "done"

    def test_succeeds_iff_policy_allows(self, make_service, replica):
        """Every state pair succeeds exactly when the policy allows it."""
        service = make_service(replica, hooks=None, auto_sync=False)
        policy = service.policy
        ticket_id = service.create("Matrix")
        for source in policy.valid_states():
            for target in policy.valid_states():
                force_state(service, ticket_id, source)
                if policy.is_valid_transition(source, target):
                    service.transition(ticket_id, target)
                    assert service.read(ticket_id).state == target
                else:
                    with pytest.raises(InvalidTransition):
                        service.transition(ticket_id, target)
                    assert service.read(ticket_id).state == source
                assert service.read(ticket_id).state in policy.valid_states()

    def test_rejected_transition_leaves_no_trace(self, service, origin):
        """A refused transition leaves the replica and origin untouched."""
        ticket_id = service.create("x")
        local_head = get_commit_sha(service.replica.path)
        origin_head = get_commit_sha(origin, "main")
        with pytest.raises(InvalidTransition):
            service.transition(ticket_id, "qa")
        assert get_commit_sha(service.replica.path) == local_head
        assert get_commit_sha(origin, "main") == origin_head

    def test_unknown_state(self, service):
        """Targets outside the policy are refused."""
        ticket_id = service.create("x")
        with pytest.raises(InvalidTransition, match="Invalid state: shipped"):
            service.transition(ticket_id, "shipped")

    def test_partial_id(self, service):
        """Partial ids are accepted."""
        ticket_id = service.create("x")
        result = service.transition(ticket_id[3:], "in-progress")
        assert result.ticket_id == ticket_id

    def test_no_sync_commits_locally_only(self, service, origin):
        """With sync=False the transition is committed but not published."""
        ticket_id = service.create("x")
        service.transition(ticket_id, "in-progress", sync=False)
        assert parse_ticket(service.replica.read(ticket_id)).state == "in-progress"
        assert origin_state(origin, ticket_id) == "ready"

    def test_auto_sync_disabled(self, make_service, replica, origin):
        """With auto sync off nothing is pushed."""
        service = make_service(replica, auto_sync=False)
        ticket_id = service.create("local only")
        assert show_file(origin, f"{ticket_id}.md", "main") is None
        service.sync("push")
        assert origin_state(origin, ticket_id) == "ready"

    def test_sync_mode_validated(self, service):
        """sync() refuses unknown modes."""
        with pytest.raises(ValueError):
            service.sync("sideways")


class TestTransitionHooks:
    """Pre-hooks veto before anything is written; post-hooks run after the push."""

    @pytest.fixture
    def gated_policy(self):
        policy = json.loads(json.dumps(FALLBACK_POLICY))
        policy["transitions"]["ready"]["hooks"]["pre"] = {"in-progress": ["gate"]}
        return PolicyEngine(policy=policy)

    def test_pre_hook_veto(self, make_service, replica, hooks_dir, gated_policy, origin):
        """A failing pre-hook vetoes the transition."""
        write_hook(hooks_dir, "gate", "exit 3")
        service = make_service(replica, policy=gated_policy)
        ticket_id = service.create("x")
        local_head = get_commit_sha(replica.path)

        with pytest.raises(HookVetoed) as exc:
            service.transition(ticket_id, "in-progress")
        assert exc.value.hook_name == "gate"
        assert "exit 3" in str(exc.value)
        assert service.read(ticket_id).state == "ready"
        assert get_commit_sha(replica.path) == local_head
        assert origin_state(origin, ticket_id) == "ready"

    def test_pre_hook_timeout_is_veto(self, make_service, replica, hooks_dir, gated_policy, tmp_path):
        """A pre-hook that runs past the timeout vetoes."""
        write_hook(hooks_dir, "gate", "sleep 5")
        hooks = HookDispatcher(hooks_dir, default_dir=None, timeout=1, log_path=tmp_path / "hook.log")
        service = make_service(replica, policy=gated_policy, hooks=hooks)
        ticket_id = service.create("x")
        with pytest.raises(HookVetoed, match="timed out"):
            service.transition(ticket_id, "in-progress")
        assert service.read(ticket_id).state == "ready"

    def test_no_hooks_flag_skips_veto(self, make_service, replica, hooks_dir, gated_policy):
        """run_hooks=False skips the veto."""
        write_hook(hooks_dir, "gate", "exit 1")
        service = make_service(replica, policy=gated_policy)
        ticket_id = service.create("x")
        result = service.transition(ticket_id, "in-progress", run_hooks=False)
        assert result.post_task is None
        assert service.read(ticket_id).state == "in-progress"

    def test_hook_ordering(self, make_service, replica, hooks_dir, gated_policy, origin, tmp_path, monkeypatch):
        """Pre-hooks run before the commit and post-hooks after the push."""
        pre_marker = tmp_path / "pre.txt"
        post_marker = tmp_path / "post.txt"
        release = tmp_path / "release"
        monkeypatch.setenv("TEST_ORIGIN", str(origin))
        monkeypatch.setenv("PRE_MARKER", str(pre_marker))
        monkeypatch.setenv("POST_MARKER", str(post_marker))
        monkeypatch.setenv("RELEASE", str(release))
        # Each hook records the state origin holds while it runs
        write_hook(hooks_dir, "gate",
                   'git --git-dir "$TEST_ORIGIN" show main:"$1".md | grep "^state:" > "$PRE_MARKER"')
        write_hook(hooks_dir, "on-claim",
                   'i=0; while [ ! -f "$RELEASE" ] && [ $i -lt 100 ]; do sleep 0.1; i=$((i+1)); done\n'
                   'git --git-dir "$TEST_ORIGIN" show main:"$1".md | grep "^state:" > "$POST_MARKER"')
        service = make_service(replica, policy=gated_policy)
        ticket_id = service.create("x")

        result = service.transition(ticket_id, "in-progress")

        assert pre_marker.read_text().strip() == "state: ready"
        assert result.post_hooks == ["on-claim"]
        assert not post_marker.exists()
        release.write_text("")
        assert service.wait_for_hooks(timeout=30)
        assert post_marker.read_text().strip() == "state: in-progress"

    def test_hook_environment(self, service, hooks_dir, tmp_path, monkeypatch):
        """Hooks see the ticket id and the transition in their environment."""
        env_file = tmp_path / "env.txt"
        monkeypatch.setenv("ENV_FILE", str(env_file))
        write_hook(hooks_dir, "on-claim",
                   'echo "$1|$WIGGUM_TICKET_ID|$WIGGUM_PREV_STATE|$WIGGUM_NEW_STATE|'
                   '$WIGGUM_AGENT_ID|$WIGGUM_SESSION|$WIGGUM_TICKET_PATH" > "$ENV_FILE"')
        ticket_id = service.create("x")
        service.transition(ticket_id, "in-progress")
        service.wait_for_hooks(timeout=30)
        fields = env_file.read_text().strip().split("|")
        assert fields[:6] == [ticket_id, ticket_id, "ready", "in-progress", "agent-1", "test-session"]
        assert fields[6].endswith(f"{ticket_id}.md")

    def test_post_hook_failure_does_not_fail_transition(self, service, hooks_dir, tmp_path, caplog):
        """A failing post-hook is logged, not raised."""
        write_hook(hooks_dir, "on-claim", "echo boom >&2; exit 9")
        ticket_id = service.create("x")
        result = service.transition(ticket_id, "in-progress")
        assert service.wait_for_hooks(timeout=30)
        assert result.to_state == "in-progress"
        assert service.read(ticket_id).state == "in-progress"
        assert [f.name for f in service.hooks.tasks.failures] == ["on-claim"]
        log = (tmp_path / "hook.log").read_text()
        assert "on-claim" in log and "FAILED (exit 9)" in log and "boom" in log
        assert "Post-hook on-claim failed" in caplog.text


class TestConcurrentReplicas:
    """Two replicas racing on the same ticket."""

    def test_exactly_one_transition_wins(self, make_replica, make_service):
        """Of two racing transitions only the first push lands."""
        a = make_service(make_replica("a"), agent_id="agent-a")
        b = make_service(make_replica("b"), agent_id="agent-b")
        ticket_id = a.create("Contended")
        a.transition(ticket_id, "in-progress")
        b.read(ticket_id)

        # b acts on what it last saw, without pulling
        b.replica.pull = lambda: None
        b_head = b.replica.checkpoint()

        a.transition(ticket_id, "review")
        with pytest.raises(SyncConflict):
            b.transition(ticket_id, "review")
        assert b.replica.checkpoint() == b_head

        del b.replica.pull
        assert b.read(ticket_id).state == "review"
        with pytest.raises(InvalidTransition):
            b.transition(ticket_id, "review")

    def test_concurrent_comments_retry_and_merge(self, make_replica, make_service, origin, monkeypatch):
        """A stale comment push is retried and both comments survive."""
        a = make_service(make_replica("a"), agent_id="agent-a")
        b = make_service(make_replica("b"), agent_id="agent-b")
        ticket_id = a.create("Discussed")
        b.read(ticket_id)

        real_pull = b.replica.pull
        calls = []

        def stale_first_pull():
            calls.append(1)
            if len(calls) > 1:
                real_pull()

        monkeypatch.setattr(b.replica, "pull", stale_first_pull)

        a.append_comment(ticket_id, "from a")
        b.append_comment(ticket_id, "from b")

        published = parse_ticket(show_file(origin, f"{ticket_id}.md", "main"))
        assert [c.text for c in published.comments] == ["from a", "from b"]
        assert len(calls) == 2

    def test_identical_comments_from_two_replicas_both_kept(self, make_replica, make_service, origin, monkeypatch):
        """Two humans posting the same text at the same time leave two comments."""
        a = make_service(make_replica("a"))
        b = make_service(make_replica("b"))
        ticket_id = a.create("Voted")
        b.read(ticket_id)

        real_pull = b.replica.pull
        calls = []

        def stale_first_pull():
            calls.append(1)
            if len(calls) > 1:
                real_pull()

        monkeypatch.setattr(b.replica, "pull", stale_first_pull)

        a.append_comment(ticket_id, "+1")
        b.append_comment(ticket_id, "+1")

        published = parse_ticket(show_file(origin, f"{ticket_id}.md", "main"))
        assert [(c.author, c.text) for c in published.comments] == [("human", "+1"), ("human", "+1")]
        assert b.read(ticket_id).comments == published.comments


class TestOriginBackedService:
    """The service works directly against the bare origin."""

    def test_create_and_transition(self, make_service, origin_replica, origin):
        """The service can write straight to the bare origin."""
        service = make_service(origin_replica)
        ticket_id = service.create("On origin")
        service.transition(ticket_id, "in-progress")
        assert origin_state(origin, ticket_id) == "in-progress"
        assert service.ready() == []
