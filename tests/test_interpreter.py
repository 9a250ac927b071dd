"""Tests for the execution interpreter and template resolution."""

import asyncio
from datetime import datetime, timezone

import bcrypt
import pytest

from conftest import FailingDocumentStore, build_graph, node, signup_graph

from services.execution import (
    ExecutionInterpreter,
    LogPhase,
    RunStatus,
    build_default_registry,
    resolve_templates,
    to_plain,
)
from services.graph import Edge

SIGNUP_INPUT = {"email": "ada@example.com", "name": "Ada", "password": "hunter22"}


def phases(log, step_index=None):
    return [(e.step_index, e.phase) for e in log
            if step_index is None or e.step_index == step_index]


class TestSuccessfulRuns:

    async def test_signup_flow(self, interpreter, store, sink):
        result = await interpreter.run(signup_graph(), SIGNUP_INPUT)

        assert result.success, result.error
        assert result.status == RunStatus.SUCCEEDED
        assert result.output["status"] == 201
        user = result.output["body"]["user"]
        assert user["email"] == "ada@example.com"
        assert user["_id"]
        assert user["password"] != "hunter22"
        assert bcrypt.checkpw(b"hunter22", user["password"].encode())
        assert len(store.collections["users"]) == 1

        assert phases(result.log) == [
            (0, LogPhase.START), (0, LogPhase.SUCCESS),
            (1, LogPhase.START), (1, LogPhase.SUCCESS),
            (2, LogPhase.START), (2, LogPhase.SUCCESS),
            (2, LogPhase.END),
        ]
        assert sink.entries == result.log
        assert [s["outputVariable"] for s in result.steps] == [None, "created", "_response"]

    async def test_output_without_response_is_scope_minus_input(self, interpreter):
        graph = build_graph([node("in", "input", variables=[{"name": "email"}]),
                             node("wait", "delay", seconds=0)])
        result = await interpreter.run(graph, {"email": "a@b.co"})

        assert result.success
        assert set(result.output) == {"email", "wait"}
        assert result.output["email"] == "a@b.co"

    async def test_response_ends_the_run(self, interpreter):
        graph = build_graph([node("respond", "response", status=200, body={"ok": True}),
                             node("wait", "delay", seconds=0)], edges=[])
        result = await interpreter.run(graph)

        assert result.success
        assert result.output == {"status": 200, "body": {"ok": True}}
        assert [s["nodeId"] for s in result.steps] == ["respond"]

    async def test_input_default_and_partial_template(self, interpreter):
        graph = build_graph([
            node("in", "input", variables=[{"name": "name", "default": "friend"}]),
            node("respond", "response", status=200, body={"greeting": "Hello {{name}}!"}),
        ])
        result = await interpreter.run(graph, {})
        assert result.output["body"] == {"greeting": "Hello friend!"}

    async def test_declared_output_variable(self, interpreter, store):
        await store.insert("users", {"email": "ada@example.com"})
        graph = build_graph([
            node("find", "dbFind", collection="users", filters={"email": "{{input.email}}"},
                 output="account"),
            node("respond", "response", status=200, body="{{account.email}}"),
        ])
        result = await interpreter.run(graph, {"email": "ada@example.com"})
        assert result.output["body"] == "ada@example.com"

    async def test_auth_middleware_reads_bearer_token(self, interpreter, signer):
        token = signer.sign({"userId": "u-1"})
        graph = build_graph([
            node("auth", "authMiddleware"),
            node("respond", "response", status=200, body="{{currentUser.userId}}"),
        ])
        result = await interpreter.run(graph, headers={"Authorization": f"Bearer {token}"})
        assert result.success, result.error
        assert result.output["body"] == "u-1"

    async def test_jwt_generate(self, interpreter, signer):
        graph = build_graph([
            node("sign", "jwtGenerate", payload={"sub": "{{input.id}}"}, expiresIn="1h"),
            node("respond", "response", status=200, body={"token": "{{token}}"}),
        ])
        result = await interpreter.run(graph, {"id": "42"})
        claims = signer.verify(result.output["body"]["token"])
        assert claims["sub"] == "42"
        assert claims["exp"] - claims["iat"] == 3600

    async def test_email_send(self, interpreter, mailer):
        graph = build_graph([
            node("mail", "emailSend", to="{{input.email}}", subject="Welcome",
                 body="Hi {{input.name}}"),
        ])
        result = await interpreter.run(graph, {"email": "ada@example.com", "name": "Ada"})
        assert result.success
        assert mailer.sent == [{"to": "ada@example.com", "subject": "Welcome",
                                "body": "Hi Ada", "from": None}]

    async def test_concurrent_runs_are_isolated(self, interpreter):
        graph = build_graph([
            node("in", "input", variables=[{"name": "n"}]),
            node("wait", "delay", seconds=0.01),
            node("respond", "response", status=200, body="{{n}}"),
        ])
        first, second = await asyncio.gather(
            interpreter.run(graph, {"n": "one"}),
            interpreter.run(graph, {"n": "two"}),
        )
        assert first.output["body"] == "one"
        assert second.output["body"] == "two"
        assert first.execution_id != second.execution_id

    async def test_failing_sink_does_not_fail_the_run(self, registry):
        class BrokenSink:
            def append(self, entry):
                raise RuntimeError("sink down")

        result = await ExecutionInterpreter(registry, log_sink=BrokenSink()).run(signup_graph(),
                                                                                  SIGNUP_INPUT)
        assert result.success


class TestFailedRuns:

    async def test_undefined_email_recipient_fails_fast(self, interpreter, mailer):
        graph = build_graph([
            node("in", "input", variables=[]),
            node("mail", "emailSend", to=None, subject="Hi", body="Hello"),
            node("respond", "response", status=200, body={}),
        ])
        result = await interpreter.run(graph)

        assert not result.success
        assert result.status == RunStatus.FAILED
        assert result.failing_step == 1
        assert result.error_kind == "configuration"
        assert "to" in result.error
        assert all(e.node_type != "response" for e in result.log)
        assert mailer.sent == []

    async def test_unresolved_recipient_template_fails_fast(self, interpreter, mailer):
        for recipient in ("{{input.email}}", "input.email"):
            graph = build_graph([
                node("in", "input", variables=[]),
                node("mail", "emailSend", to=recipient, subject="Hi", body="Hello"),
                node("respond", "response", status=200, body={}),
            ])
            result = await interpreter.run(graph, {})

            assert not result.success, recipient
            assert result.failing_step == 1
            assert result.error_kind == "configuration"
            assert "to" in result.error
        assert mailer.sent == []

    async def test_store_failure_stops_at_insert_step(self, mailer, signer, settings, sink):
        registry = build_default_registry(store=FailingDocumentStore(), mailer=mailer,
                                          signer=signer, settings=settings)
        result = await ExecutionInterpreter(registry, log_sink=sink).run(signup_graph(),
                                                                         SIGNUP_INPUT)

        assert not result.success
        assert result.failing_step == 1
        assert result.error_kind == "handler"
        assert "database unavailable" in result.error
        assert phases(result.log, 1) == [(1, LogPhase.START), (1, LogPhase.ERROR)]
        assert result.log[-1].phase == LogPhase.ERROR
        assert max(e.step_index for e in result.log) == 1

        data = result.to_dict()
        assert data["failingStep"] == 1
        assert data["errorKind"] == "handler"

    async def test_unknown_node_type(self, interpreter):
        graph = build_graph([node("x", "slackNotify", channel="#ops")])
        result = await interpreter.run(graph)

        assert not result.success
        assert result.failing_step == 0
        assert result.error == "Unknown node type: slackNotify"
        assert result.error_kind == "configuration"
        assert phases(result.log) == [(0, LogPhase.ERROR)]

    async def test_cycle_fails_before_any_step(self, interpreter):
        graph = build_graph([node("a", "delay"), node("b", "delay")],
                            edges=[Edge("e1", "a", "b"), Edge("e2", "b", "a")])
        result = await interpreter.run(graph)

        assert not result.success
        assert result.error_kind == "validation"
        assert result.failing_step is None
        assert [e.node_type for e in result.log] == ["workflow"]

    async def test_input_validation_failure_details(self, interpreter):
        graph = build_graph([
            node("validate", "inputValidation",
                 rules=[{"field": "input.email", "required": True, "type": "email"},
                        {"field": "{{input.name}}", "minLength": 2}]),
        ])
        result = await interpreter.run(graph, {"email": "not-an-email", "name": "A"})

        assert not result.success
        assert result.error == "Input validation failed"
        assert result.error_details == {
            "input.email": ["Expected email address"],
            "{{input.name}}": ["Must be at least 2 characters"],
        }

    async def test_missing_authorization_header(self, interpreter):
        graph = build_graph([node("auth", "authMiddleware")])
        result = await interpreter.run(graph)
        assert result.failing_step == 0
        assert result.error_kind == "handler"

    async def test_reserved_output_variable(self, interpreter):
        graph = build_graph([node("find", "dbFind", collection="users", output="input")])
        result = await interpreter.run(graph)
        assert result.error_kind == "configuration"
        assert "reserved" in result.error


class TestCancellation:

    async def test_cancelled_before_start(self, interpreter):
        event = asyncio.Event()
        event.set()
        result = await interpreter.run(signup_graph(), SIGNUP_INPUT, cancel_event=event)

        assert not result.success
        assert result.error_kind == "cancelled"
        assert result.failing_step == 0
        assert phases(result.log) == [(0, LogPhase.END)]

    async def test_cancel_interrupts_delay_and_stops_next_step(self, interpreter):
        graph = build_graph([
            node("in", "input", variables=[]),
            node("wait", "delay", seconds=5),
            node("respond", "response", status=200, body={}),
        ])
        event = asyncio.Event()
        task = asyncio.create_task(interpreter.run(graph, cancel_event=event))
        await asyncio.sleep(0.05)
        event.set()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.error_kind == "cancelled"
        assert result.failing_step == 2
        assert result.steps[1]["output"]["cancelled"] is True

    async def test_step_outliving_cancelled_run_is_collected(self, registry):
        release = asyncio.Event()
        finished = []

        async def slow_write(fields, context):
            await release.wait()
            finished.append(context.execution_id)
            return {"written": True}

        registry.register("slowWrite", slow_write)
        interpreter = ExecutionInterpreter(registry)
        graph = build_graph([node("write", "slowWrite")])

        task = asyncio.create_task(interpreter.run(graph, execution_id="exec-bg"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert interpreter.detached_steps == 1

        release.set()
        await asyncio.sleep(0.05)
        assert finished == ["exec-bg"]
        assert interpreter.detached_steps == 0


class TestTemplates:

    def test_whole_template_keeps_type(self):
        scope = {"user": {"age": 30, "tags": ["a", "b"]}}
        assert resolve_templates("{{user.age}}", scope) == 30
        assert resolve_templates("{{ user.tags }}", scope) == ["a", "b"]
        assert resolve_templates("{{user.tags.1}}", scope) == "b"

    def test_partial_template_is_stringified(self):
        scope = {"user": {"age": 30, "nick": None}}
        assert resolve_templates("Age: {{user.age}}", scope) == "Age: 30"
        assert resolve_templates("Nick: {{user.nick}}.", scope) == "Nick: ."

    def test_unresolved_template_is_left_verbatim(self):
        assert resolve_templates("{{missing.path}}", {}) == "{{missing.path}}"
        assert resolve_templates("x {{missing}} y", {}) == "x {{missing}} y"

    def test_bare_dotted_path(self):
        scope = {"input": {"email": "a@b.co"}}
        assert resolve_templates("input.email", scope) == "a@b.co"
        assert resolve_templates("example.com", scope) == "example.com"
        assert resolve_templates("email", scope) == "email"

    def test_nested_structures_and_input_untouched(self):
        fields = {"data": {"email": "{{input.email}}", "list": ["{{input.n}}", 3]}}
        resolved = resolve_templates(fields, {"input": {"email": "a@b.co", "n": 1}})
        assert resolved == {"data": {"email": "a@b.co", "list": [1, 3]}}
        assert fields["data"]["email"] == "{{input.email}}"

    def test_scope_is_converted_to_plain_data(self):
        stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        scope = {"doc": {"created": stamp, "ids": ("a", "b")}}
        assert resolve_templates("{{doc.created}}", scope) == stamp.isoformat()
        assert resolve_templates("{{doc.ids.0}}", scope) == "a"
        assert to_plain(scope)["doc"]["ids"] == ["a", "b"]

    def test_strict_mode_turns_missing_references_into_none(self):
        scope = {"input": {}}
        assert resolve_templates("{{input.email}}", scope, strict=True) is None
        assert resolve_templates("input.email", scope, strict=True) is None
        assert resolve_templates("example.com", scope, strict=True) == "example.com"
        assert resolve_templates("To: {{input.email}}", scope, strict=True) == \
            "To: {{input.email}}"
        assert resolve_templates({"to": "{{input.email}}"}, scope) == {"to": "{{input.email}}"}
