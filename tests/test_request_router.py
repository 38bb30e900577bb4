"""
Tests for RequestRouter: JSON-RPC dispatch, message idempotency, blocking
sends, streaming, push configuration RPCs and error shaping.
"""

import asyncio
import threading
from typing import Any, Dict, List, Optional

import httpx
import pytest

from a2a_engine.a2a.models import (
    AgentSkill,
    Artifact,
    MessageSendConfiguration,
    MessageSendParams,
    TaskState,
    TextPart,
)
from a2a_engine.engine import A2AEngine
from a2a_engine.error_profiles import ErrorProfile
from a2a_engine.errors import PermissionDenied, Unauthenticated
from a2a_engine.settings import PushNotificationSettings
from a2a_engine.task_manager import AgentExecutor, TaskUpdater

from factories import make_message, make_settings


class EchoExecutor(AgentExecutor):
    """Works briefly, streams one artifact and completes with an echo."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay

    async def execute(self, updater: TaskUpdater, message) -> None:
        await updater.start_work()
        await asyncio.sleep(self.delay)
        await updater.add_artifact(message.parts[0].text, name="echo")
        await updater.complete("echoed")


class StallingExecutor(AgentExecutor):
    async def execute(self, updater: TaskUpdater, message) -> None:
        await updater.start_work()
        await asyncio.sleep(30)


def rpc(method: str, params: Optional[Dict[str, Any]] = None, request_id: Any = 1) -> Dict[str, Any]:
    request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        request["params"] = params
    return request


def message_params(text: str = "hi", message_id: str = "msg-1", **fields) -> Dict[str, Any]:
    message = {
        "role": "user",
        "messageId": message_id,
        "parts": [{"kind": "text", "text": text}],
    }
    message.update({k: v for k, v in fields.items() if k in ("taskId", "contextId")})
    params: Dict[str, Any] = {"message": message}
    if "configuration" in fields:
        params["configuration"] = fields["configuration"]
    return params


def make_engine(executor=None, **settings_overrides) -> A2AEngine:
    extended_skills = settings_overrides.pop("extended_skills", None)
    authorizer = settings_overrides.pop("authorizer", None)
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    return A2AEngine(
        make_settings(**settings_overrides),
        executor,
        http_client=client,
        authorizer=authorizer,
        extended_skills=extended_skills,
        configure_logs=False,
    )


async def collect_stream(stream, timeout: float = 2.0) -> List[Dict[str, Any]]:
    responses = []

    async def _drain():
        async for response in stream:
            responses.append(response)

    await asyncio.wait_for(_drain(), timeout)
    return responses


class TestJsonRpcEnvelope:
    @pytest.mark.asyncio
    async def test_non_object_request(self):
        engine = make_engine()

        response = await engine.handle(["not", "an", "object"])

        assert response["error"]["code"] == -32600
        assert response["id"] is None

    @pytest.mark.asyncio
    async def test_wrong_jsonrpc_version(self):
        engine = make_engine()

        response = await engine.handle({"jsonrpc": "1.0", "id": 7, "method": "tasks/get"})

        assert response["error"]["code"] == -32600
        assert response["id"] == 7

    @pytest.mark.asyncio
    async def test_unknown_method(self):
        engine = make_engine()

        response = await engine.handle(rpc("tasks/explode", {}))

        assert response["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_invalid_params(self):
        engine = make_engine()

        response = await engine.handle(rpc("message/send", {"message": {"role": "user", "parts": []}}))

        assert response["error"]["code"] == -32602
        assert isinstance(response["error"]["data"], str)

    @pytest.mark.asyncio
    async def test_extended_profile_keeps_structured_data(self):
        engine = make_engine(error_profile=ErrorProfile.EXTENDED_JSON)

        response = await engine.handle(rpc("tasks/get", {"id": "missing"}))

        assert response["error"]["code"] == -32001
        assert response["error"]["data"] == {"taskId": "missing"}


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_send_creates_submitted_task(self):
        engine = make_engine()

        response = await engine.handle(rpc("message/send", message_params()))

        result = response["result"]
        assert response["id"] == 1
        assert result["kind"] == "task"
        assert result["status"]["state"] == "submitted"
        assert result["history"][0]["messageId"] == "msg-1"
        assert result["history"][0]["taskId"] == result["id"]

    @pytest.mark.asyncio
    async def test_repeated_message_id_returns_same_task(self):
        engine = make_engine()
        first = (await engine.handle(rpc("message/send", message_params(contextId="ctx-1"))))["result"]

        again = (await engine.handle(rpc("message/send", message_params(contextId="ctx-1"))))["result"]
        follow_up = (
            await engine.handle(rpc("message/send", message_params(taskId=first["id"])))
        )["result"]

        assert again["id"] == first["id"]
        assert follow_up["id"] == first["id"]
        assert len(follow_up["history"]) == 1
        assert len(await engine.store.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_follow_up_message_appends_history(self):
        engine = make_engine()
        task = (await engine.handle(rpc("message/send", message_params())))["result"]

        response = await engine.handle(
            rpc("message/send", message_params("more", "msg-2", taskId=task["id"]))
        )

        assert [m["messageId"] for m in response["result"]["history"]] == ["msg-1", "msg-2"]

    @pytest.mark.asyncio
    async def test_message_to_unknown_task(self):
        engine = make_engine()

        response = await engine.handle(rpc("message/send", message_params(taskId="missing")))

        assert response["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_context_mismatch_rejected(self):
        engine = make_engine()
        task = (await engine.handle(rpc("message/send", message_params())))["result"]

        response = await engine.handle(
            rpc("message/send", message_params("x", "msg-2", taskId=task["id"], contextId="other"))
        )

        assert response["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_message_to_finished_task_rejected(self):
        engine = make_engine()
        task = (await engine.handle(rpc("message/send", message_params())))["result"]
        await engine.handle(rpc("tasks/cancel", {"id": task["id"]}))

        response = await engine.handle(
            rpc("message/send", message_params("late", "msg-2", taskId=task["id"]))
        )

        assert response["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_blocking_send_waits_for_completion(self):
        engine = make_engine(EchoExecutor())

        response = await engine.handle(
            rpc("message/send", message_params("echo me", configuration={"blocking": True}))
        )

        result = response["result"]
        assert result["status"]["state"] == "completed"
        assert result["artifacts"][0]["parts"][0]["text"] == "echo me"

    @pytest.mark.asyncio
    async def test_blocking_send_times_out_with_current_state(self):
        engine = make_engine(StallingExecutor())
        params = MessageSendParams(
            message=make_message("slow", "msg-1"),
            configuration=MessageSendConfiguration(blocking=True),
        )

        task = await engine.router.send_message(params, timeout=0.2)

        assert task.status.state is TaskState.WORKING
        await engine.task_manager.close()

    @pytest.mark.asyncio
    async def test_history_length_trims_result(self):
        engine = make_engine()
        task = (await engine.handle(rpc("message/send", message_params())))["result"]
        await engine.handle(rpc("message/send", message_params("two", "msg-2", taskId=task["id"])))

        response = await engine.handle(
            rpc(
                "message/send",
                message_params(
                    "three", "msg-3", taskId=task["id"], configuration={"historyLength": 1}
                ),
            )
        )
        fetched = await engine.handle(rpc("tasks/get", {"id": task["id"], "historyLength": 0}))

        assert [m["messageId"] for m in response["result"]["history"]] == ["msg-3"]
        assert fetched["result"]["history"] == []


class TestTaskRpcs:
    @pytest.mark.asyncio
    async def test_get_by_resource_name(self):
        engine = make_engine()
        task = (await engine.handle(rpc("message/send", message_params())))["result"]

        response = await engine.handle(rpc("tasks/get", {"name": f"tasks/{task['id']}"}))

        assert response["result"]["id"] == task["id"]

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        engine = make_engine()
        task = (await engine.handle(rpc("message/send", message_params())))["result"]

        first = await engine.handle(rpc("tasks/cancel", {"id": task["id"]}))
        second = await engine.handle(rpc("tasks/cancel", {"id": task["id"]}))

        assert first["result"]["status"]["state"] == "canceled"
        assert second["result"]["status"]["state"] == "canceled"
        assert first["result"]["status"]["timestamp"] == second["result"]["status"]["timestamp"]

    @pytest.mark.asyncio
    async def test_cancel_finished_task_keeps_history_and_artifacts(self):
        engine = make_engine()
        manager = engine.task_manager
        task = (await engine.handle(rpc("message/send", message_params("one", "msg-1"))))["result"]
        await engine.handle(rpc("message/send", message_params("two", "msg-2", taskId=task["id"])))
        await manager.transition(task["id"], TaskState.WORKING)
        await manager.add_artifact(task["id"], Artifact(artifactId="a1", parts=[TextPart(text="first")]))
        await manager.add_artifact(
            task["id"], Artifact(artifactId="a1", parts=[TextPart(text="second")]), append=True
        )
        await manager.transition(task["id"], TaskState.COMPLETED)
        before = (await engine.handle(rpc("tasks/get", {"id": task["id"]})))["result"]

        canceled = await engine.handle(rpc("tasks/cancel", {"id": task["id"]}))
        after = (await engine.handle(rpc("tasks/get", {"id": task["id"]})))["result"]

        assert canceled["result"] == before
        assert after == before
        assert [m["messageId"] for m in after["history"]] == ["msg-1", "msg-2"]
        assert [p["text"] for p in after["artifacts"][0]["parts"]] == ["first", "second"]
        assert after["status"]["state"] == "completed"

    def test_parallel_duplicate_sends_create_one_task(self):
        engine = make_engine()
        rounds = 50

        def send(message_id: str, barrier: threading.Barrier, results: List[str]) -> None:
            params = MessageSendParams.model_validate(message_params(message_id=message_id, contextId="ctx-1"))
            barrier.wait()
            results.append(asyncio.run(engine.router.send_message(params)).id)

        for index in range(rounds):
            barrier = threading.Barrier(2)
            results: List[str] = []
            threads = [
                threading.Thread(target=send, args=(f"msg-{index}", barrier, results))
                for _ in range(2)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
            assert len(results) == 2
            assert results[0] == results[1]

        assert len(asyncio.run(engine.store.list_tasks())) == rounds

    @pytest.mark.asyncio
    async def test_list_tasks_pagination(self):
        engine = make_engine()
        ids = []
        for index in range(3):
            response = await engine.handle(
                rpc("message/send", message_params(f"task {index}", f"msg-{index}", contextId="ctx-1"))
            )
            ids.append(response["result"]["id"])

        first_page = (await engine.handle(rpc("tasks/list", {"pageSize": 2})))["result"]
        second_page = (
            await engine.handle(rpc("tasks/list", {"pageSize": 2, "pageToken": first_page["nextPageToken"]}))
        )["result"]

        assert [t["id"] for t in first_page["tasks"]] == ids[:2]
        assert first_page["totalSize"] == 3
        assert first_page["nextPageToken"] == "2"
        assert [t["id"] for t in second_page["tasks"]] == ids[2:]
        assert second_page["nextPageToken"] == ""

    @pytest.mark.asyncio
    async def test_list_tasks_filters_by_state(self):
        engine = make_engine()
        kept = (await engine.handle(rpc("message/send", message_params("a", "msg-a"))))["result"]
        canceled = (await engine.handle(rpc("message/send", message_params("b", "msg-b"))))["result"]
        await engine.handle(rpc("tasks/cancel", {"id": canceled["id"]}))

        response = await engine.handle(rpc("tasks/list", {"status": "canceled"}))

        assert [t["id"] for t in response["result"]["tasks"]] == [canceled["id"]]
        assert kept["id"] != canceled["id"]

    @pytest.mark.asyncio
    async def test_list_tasks_invalid_page_token(self):
        engine = make_engine()

        response = await engine.handle(rpc("tasks/list", {"pageToken": "abc"}))

        assert response["error"]["code"] == -32602


class TestStreaming:
    @pytest.mark.asyncio
    async def test_message_stream_yields_task_then_updates(self):
        engine = make_engine(EchoExecutor())

        stream = await engine.handle(rpc("message/stream", message_params("stream me")))
        responses = await collect_stream(stream)

        results = [r["result"] for r in responses]
        assert results[0]["kind"] == "task"
        assert [r["kind"] for r in results[1:]] == ["status-update", "artifact-update", "status-update"]
        assert results[1]["status"]["state"] == "working"
        assert results[-1]["status"]["state"] == "completed"
        assert results[-1]["final"] is True
        assert all(r["id"] == 1 for r in responses)

    @pytest.mark.asyncio
    async def test_resubscribe_to_finished_task(self):
        engine = make_engine(EchoExecutor())
        task = (
            await engine.handle(rpc("message/send", message_params(configuration={"blocking": True})))
        )["result"]

        stream = await engine.handle(rpc("tasks/resubscribe", {"id": task["id"]}))
        results = [r["result"] for r in await collect_stream(stream)]

        assert results[0]["kind"] == "task"
        assert len(results) == 2
        assert results[1]["final"] is True
        assert results[1]["status"]["state"] == "completed"

    @pytest.mark.asyncio
    async def test_resubscribe_unknown_task(self):
        engine = make_engine()

        response = await engine.handle(rpc("tasks/resubscribe", {"id": "missing"}))

        assert response["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_deleting_task_ends_stream_with_final_status(self):
        engine = make_engine()
        task = (await engine.handle(rpc("message/send", message_params())))["result"]
        stream = await engine.handle(rpc("tasks/resubscribe", {"id": task["id"]}))

        first = await stream.__anext__()
        await engine.task_manager.delete_task(task["id"])
        rest = await collect_stream(stream)

        assert first["result"]["kind"] == "task"
        assert len(rest) == 1
        assert rest[0]["result"]["kind"] == "status-update"
        assert rest[0]["result"]["status"]["state"] == "canceled"
        assert rest[0]["result"]["final"] is True


class TestPushNotificationRpcs:
    @pytest.mark.asyncio
    async def test_config_lifecycle(self):
        engine = make_engine()
        task = (await engine.handle(rpc("message/send", message_params())))["result"]

        created = await engine.handle(
            rpc(
                "tasks/pushNotificationConfig/set",
                {
                    "taskId": task["id"],
                    "pushNotificationConfig": {"id": "cfg", "url": "https://client.example.com/hook"},
                },
            )
        )
        fetched = await engine.handle(
            rpc("tasks/pushNotificationConfig/get", {"id": task["id"], "pushNotificationConfigId": "cfg"})
        )
        listed = await engine.handle(rpc("tasks/pushNotificationConfig/list", {"id": task["id"]}))
        deleted = await engine.handle(
            rpc("tasks/pushNotificationConfig/delete", {"id": task["id"], "pushNotificationConfigId": "cfg"})
        )
        missing = await engine.handle(
            rpc("tasks/pushNotificationConfig/delete", {"id": task["id"], "pushNotificationConfigId": "cfg"})
        )

        assert created["result"]["pushNotificationConfig"]["id"] == "cfg"
        assert created["result"]["deliveryStatus"] == "active"
        assert fetched["result"]["pushNotificationConfig"]["url"] == "https://client.example.com/hook"
        assert len(listed["result"]) == 1
        assert deleted["result"] is None
        assert missing["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_config_for_unknown_task(self):
        engine = make_engine()

        response = await engine.handle(
            rpc(
                "tasks/pushNotificationConfig/set",
                {"taskId": "missing", "pushNotificationConfig": {"url": "https://client.example.com/hook"}},
            )
        )

        assert response["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_push_disabled(self):
        engine = make_engine(push_notifications=PushNotificationSettings(enabled=False))

        response = await engine.handle(
            rpc(
                "message/send",
                message_params(configuration={"pushNotificationConfig": {"url": "https://client.example.com/hook"}}),
            )
        )

        assert response["error"]["code"] == -32003
        assert engine.card_generator.generate_agent_card().capabilities.pushNotifications is False

    @pytest.mark.asyncio
    async def test_send_registers_inline_config(self):
        engine = make_engine()

        response = await engine.handle(
            rpc(
                "message/send",
                message_params(
                    configuration={"pushNotificationConfig": {"id": "inline", "url": "https://client.example.com/hook"}}
                ),
            )
        )

        configs = await engine.dispatcher.list(response["result"]["id"])
        assert [c.pushNotificationConfig.id for c in configs] == ["inline"]


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_authorizer_rejections_become_errors(self):
        async def authorizer(method, request):
            if method == "tasks/cancel":
                raise PermissionDenied()
            if "auth" not in request:
                raise Unauthenticated()

        engine = make_engine(authorizer=authorizer)

        unauthenticated = await engine.handle(rpc("tasks/get", {"id": "x"}))
        denied = await engine.handle(rpc("tasks/cancel", {"id": "x"}))

        assert unauthenticated["error"]["code"] == -32040
        assert denied["error"]["code"] == -32041

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_internal_errors(self):
        async def authorizer(method, request):
            raise RuntimeError("auth backend down")

        engine = make_engine(authorizer=authorizer)

        response = await engine.handle(rpc("tasks/get", {"id": "x"}))

        assert response["error"]["code"] == -32603


class TestAgentCard:
    @pytest.mark.asyncio
    async def test_extended_card_not_configured(self):
        engine = make_engine()

        response = await engine.handle(rpc("agent/getAuthenticatedExtendedCard"))

        assert response["error"]["code"] == -32007

    @pytest.mark.asyncio
    async def test_extended_card_adds_skills(self):
        skill = AgentSkill(id="admin", name="Admin", description="Administrative tasks", tags=["admin"])
        engine = make_engine(extended_skills=[skill])

        public = engine.router.get_agent_card()
        response = await engine.handle(rpc("agent/getAuthenticatedExtendedCard"))

        assert public.supportsAuthenticatedExtendedCard is True
        assert "admin" not in [s.id for s in public.skills]
        assert "admin" in [s["id"] for s in response["result"]["skills"]]
        assert public.capabilities.streaming is True
        assert public.protocolVersion == "0.3.0"
