"""Tests for the proxy layer: Ollama mapping, tool-server transport, config, HTTP routes."""

import json
import os
import sys
import textwrap
import time

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from attestchat.proxy.agent.models import (
    Message, ModelError, ModelReply, TextPart, ToolResultPart, ToolUsePart,
)
from attestchat.proxy.config import DEFAULT_CONFIG, Config, env_overrides
from attestchat.proxy.ollama import (
    OllamaClient, describe_model_error, history_to_messages, normalize_arguments, parse_reply,
)
from attestchat.proxy.toolserver import ToolServer, ToolServerError


# ═══════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════

FAKE_TOOL_SERVER = textwrap.dedent("""
    import json, sys

    TOOLS = [
        {"name": "list_agents", "description": "List registered agents",
         "inputSchema": {"type": "object", "properties": {}}},
        {"name": "get_agent_status", "description": "Status of one agent",
         "inputSchema": {"type": "object", "properties": {"agent_uuid": {"type": "string"}},
                         "required": ["agent_uuid"]}},
    ]

    def send(payload):
        sys.stdout.write(json.dumps(payload) + "\\n")
        sys.stdout.flush()

    while True:
        line = sys.stdin.readline()
        if not line:
            break
        msg = json.loads(line)
        if "id" not in msg:
            continue
        method, params = msg["method"], msg.get("params", {})
        sys.stdout.write("this line is not json\\n")
        send({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})
        if method == "initialize":
            result = {"protocolVersion": params["protocolVersion"], "capabilities": {},
                      "serverInfo": {"name": "fake-keylime", "version": "0.0.1"}}
        elif method == "tools/list":
            result = {"tools": TOOLS}
        elif method == "tools/call" and params["name"] == "get_agent_status":
            uuid = params["arguments"].get("agent_uuid", "")
            result = {"content": [{"type": "text", "text": "agent " + uuid + " not found"}],
                      "isError": True}
        elif method == "tools/call" and params["name"] == "list_agents":
            result = {"content": [{"type": "text", "text": "d432fbb3"}]}
        elif method == "tools/call" and params["name"] == "list_resources":
            size = params["arguments"].get("size", 100000)
            result = {"content": [{"type": "text", "text": "r" * size}]}
        else:
            send({"jsonrpc": "2.0", "id": msg["id"],
                  "error": {"code": -32601, "message": "Unknown method " + method}})
            continue
        send({"jsonrpc": "2.0", "id": msg["id"], "result": result})
""")


@pytest.fixture
def cfg():
    return Config(**{**DEFAULT_CONFIG, "tool_server_args": ()})


@pytest.fixture
def fake_server_script(tmp_path):
    script = tmp_path / "fake_tool_server.py"
    script.write_text(FAKE_TOOL_SERVER)
    return script


# ═══════════════════════════════════════════════════════════════
# Ollama mapping
# ═══════════════════════════════════════════════════════════════

class TestHistoryToMessages:
    """Tests for flattening part-based history into Ollama chat messages."""

    def test_system_prompt_first(self):
        messages = history_to_messages("be helpful", [])
        assert messages == [{"role": "system", "content": "be helpful"}]

    def test_tool_round_trip_shape(self):
        history = [
            Message("user", (TextPart("List agents"),)),
            Message("assistant", (TextPart("Checking."), ToolUsePart("t1", "list_agents", {"verbose": True}))),
            Message("user", (ToolResultPart("t1", "d432fbb3", False, name="list_agents"),)),
        ]
        messages = history_to_messages("sys", history)
        assert messages[1] == {"role": "user", "content": "List agents"}
        assert messages[2] == {
            "role": "assistant",
            "content": "Checking.",
            "tool_calls": [{"function": {"name": "list_agents", "arguments": {"verbose": True}}}],
        }
        assert messages[3] == {"role": "tool", "content": "d432fbb3", "tool_name": "list_agents"}

    def test_each_result_becomes_a_tool_message(self):
        history = [
            Message("user", (
                ToolResultPart("a", "one", False, name="x"),
                ToolResultPart("b", "two", True, name="y"),
            )),
        ]
        messages = history_to_messages("sys", history)
        assert [m["content"] for m in messages[1:]] == ["one", "two"]
        assert all(m["role"] == "tool" for m in messages[1:])


class TestParseReply:
    """Tests for splitting a chat response into parts."""

    def test_text_and_tool_calls(self):
        response = {"message": {
            "role": "assistant",
            "content": "  Let me check.  ",
            "tool_calls": [{"function": {"name": "get_agent_status", "arguments": {"agent_uuid": "d432"}}}],
        }}
        result = parse_reply(response)
        assert isinstance(result.parts[0], TextPart)
        assert result.parts[0].text == "Let me check."
        use = result.tool_uses[0]
        assert use.name == "get_agent_status"
        assert use.arguments == {"agent_uuid": "d432"}
        assert use.tool_id.startswith("call_")

    def test_generated_ids_are_unique(self):
        call = {"function": {"name": "list_agents", "arguments": {}}}
        result = parse_reply({"message": {"content": "", "tool_calls": [call, call]}})
        ids = [u.tool_id for u in result.tool_uses]
        assert len(set(ids)) == 2

    def test_blank_content_dropped(self):
        result = parse_reply({"message": {"content": "   "}})
        assert result.parts == []

    def test_model_dump_response(self):
        response = MagicMock()
        response.model_dump.return_value = {"message": {"content": "hi", "tool_calls": None}}
        assert parse_reply(response).parts == [TextPart("hi")]


class TestNormalizeArguments:
    """Tests for tool-call argument coercion."""

    def test_dict(self):
        assert normalize_arguments({"a": 1}) == {"a": 1}

    def test_json_string(self):
        assert normalize_arguments('{"agent_uuid": "d432"}') == {"agent_uuid": "d432"}

    def test_garbage(self):
        assert normalize_arguments("{not json") == {}
        assert normalize_arguments('["list"]') == {}
        assert normalize_arguments(None) == {}


class TestOllamaClient:
    """Tests for OllamaClient.complete against a mocked SDK client."""

    @pytest.mark.asyncio
    async def test_complete_sends_tools(self, cfg):
        client = OllamaClient(cfg)
        client._client = MagicMock()
        client._client.chat = AsyncMock(return_value={"message": {"content": "done"}})
        tools = [{"type": "function", "function": {"name": "list_agents", "parameters": {}}}]

        result = await client.complete("sys", [Message("user", (TextPart("hi"),))], tools)

        kwargs = client._client.chat.await_args.kwargs
        assert kwargs["tools"] == tools
        assert kwargs["stream"] is False
        assert kwargs["model"] == cfg.ollama_model
        assert kwargs["options"]["num_predict"] == 2048
        assert result.parts == [TextPart("done")]

    @pytest.mark.asyncio
    async def test_complete_without_tools(self, cfg):
        client = OllamaClient(cfg)
        client._client = MagicMock()
        client._client.chat = AsyncMock(return_value={"message": {"content": "summary"}})
        await client.complete("sys", [], None)
        assert "tools" not in client._client.chat.await_args.kwargs

    @pytest.mark.asyncio
    async def test_sdk_failure_becomes_model_error(self, cfg):
        client = OllamaClient(cfg)
        client._client = MagicMock()
        client._client.chat = AsyncMock(side_effect=ConnectionError("Connection refused"))
        with pytest.raises(ModelError, match="ollama serve"):
            await client.complete("sys", [], None)

    @pytest.mark.asyncio
    async def test_health_check(self, cfg):
        client = OllamaClient(cfg)
        client._client = MagicMock()
        client._client.list = AsyncMock(side_effect=ConnectionError("down"))
        assert await client.health_check() is False

    def test_describe_model_error(self):
        assert "ollama pull qwen" in describe_model_error(Exception("model 'qwen' not found"), "qwen")
        assert describe_model_error(Exception("weird"), "m") == "Model request failed: weird"


# ═══════════════════════════════════════════════════════════════
# Tool server transport
# ═══════════════════════════════════════════════════════════════

class TestToolServer:
    """Tests for the stdio JSON-RPC client against a scripted subprocess."""

    @pytest.mark.asyncio
    async def test_handshake_and_list(self, fake_server_script):
        server = ToolServer(sys.executable, [str(fake_server_script)], request_timeout=10.0)
        try:
            await server.start()
            assert server.is_running
            assert server.server_info["name"] == "fake-keylime"
            tools = await server.list_tools()
            assert [t["name"] for t in tools] == ["list_agents", "get_agent_status"]
        finally:
            await server.close()
        assert server.is_running is False

    @pytest.mark.asyncio
    async def test_call_tool(self, fake_server_script):
        server = ToolServer(sys.executable, [str(fake_server_script)], request_timeout=10.0)
        try:
            await server.start()
            ok = await server.call_tool("list_agents", {})
            assert ok.is_error is False
            assert ok.texts == [{"type": "text", "text": "d432fbb3"}]

            failed = await server.call_tool("get_agent_status", {"agent_uuid": "abc"})
            assert failed.is_error is True
            assert failed.texts[0]["text"] == "agent abc not found"
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_reply_larger_than_default_stream_limit(self, fake_server_script):
        server = ToolServer(sys.executable, [str(fake_server_script)], request_timeout=10.0)
        try:
            await server.start()
            result = await server.call_tool("list_resources", {"size": 100000})
            assert result.is_error is False
            assert len(result.texts[0]["text"]) == 100000
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_oversized_line_raises_and_session_survives(self, fake_server_script):
        server = ToolServer(
            sys.executable, [str(fake_server_script)], request_timeout=10.0, line_limit=4096,
        )
        try:
            await server.start()
            with pytest.raises(ToolServerError, match="line limit"):
                await server.call_tool("list_resources", {"size": 20000})
            ok = await server.call_tool("list_agents", {})
            assert ok.texts == [{"type": "text", "text": "d432fbb3"}]
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_json_rpc_error_raises(self, fake_server_script):
        server = ToolServer(sys.executable, [str(fake_server_script)], request_timeout=10.0)
        try:
            await server.start()
            with pytest.raises(ToolServerError, match="Unknown method"):
                await server.request("resources/list", {})
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_missing_command(self, tmp_path):
        server = ToolServer(str(tmp_path / "no-such-server"))
        with pytest.raises(ToolServerError, match="not found"):
            await server.start()

    @pytest.mark.asyncio
    async def test_call_when_not_running(self):
        server = ToolServer("keylime-mcp-server")
        with pytest.raises(ToolServerError, match="not running"):
            await server.call_tool("list_agents", {})

    @pytest.mark.asyncio
    async def test_server_exit_mid_session(self, tmp_path):
        script = tmp_path / "dies.py"
        script.write_text(textwrap.dedent("""
            import json, sys
            msg = json.loads(sys.stdin.readline())
            print(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": {}}), flush=True)
            sys.stdin.readline()
        """))
        server = ToolServer(sys.executable, [str(script)], request_timeout=10.0)
        try:
            await server.start()
            with pytest.raises(ToolServerError):
                await server.list_tools()
        finally:
            await server.close()


# ═══════════════════════════════════════════════════════════════
# Config
# ═══════════════════════════════════════════════════════════════

class TestConfig:
    """Tests for Config loading and defaults."""

    def test_default_config_values(self, cfg):
        assert cfg.proxy_port == 3000
        assert cfg.agent_max_turns == 5
        assert cfg.ollama_num_predict == 2048
        assert cfg.event_buffer_size == 100
        assert cfg.event_keepalive_interval == 30.0

    def test_config_load_from_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "ollama_model": "llama3.1:8b",
            "tool_server_args": ["--verifier", "https://localhost:8881"],
            "not_a_real_key": 1,
        }))
        loaded = Config.load(config_path=path)
        assert loaded.ollama_model == "llama3.1:8b"
        assert loaded.tool_server_args == ("--verifier", "https://localhost:8881")
        assert not hasattr(loaded, "not_a_real_key")
        # Defaults still applied
        assert loaded.proxy_port == 3000

    def test_config_env_override(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{}")
        with patch.dict(os.environ, {"ATTESTCHAT_AGENT_MAX_TURNS": "8", "ATTESTCHAT_PROXY_HOST": "0.0.0.0"}):
            loaded = Config.load(config_path=path)
        assert loaded.agent_max_turns == 8
        assert loaded.proxy_host == "0.0.0.0"

    def test_env_overrides_coercion(self):
        overrides = env_overrides({
            "ATTESTCHAT_OLLAMA_TEMPERATURE": "0.5",
            "ATTESTCHAT_PROXY_PORT": "not-a-port",
            "ATTESTCHAT_TOOL_SERVER_ARGS": "--a 1",
            "UNRELATED": "x",
        })
        assert overrides == {"ollama_temperature": 0.5, "tool_server_args": ["--a", "1"]}

    def test_broken_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")
        assert Config.load(config_path=path).ollama_model == DEFAULT_CONFIG["ollama_model"]

    def test_with_overrides_ignores_none(self, cfg):
        updated = cfg.with_overrides(proxy_host=None, proxy_port=8080)
        assert updated.proxy_host == cfg.proxy_host
        assert updated.proxy_port == 8080


# ═══════════════════════════════════════════════════════════════
# HTTP routes
# ═══════════════════════════════════════════════════════════════

class TestServerRoutes:
    """Tests for the FastAPI surface with mocked model and tool server."""

    @pytest.fixture
    def services(self, cfg):
        from attestchat.proxy.server import Services

        ollama = MagicMock()
        ollama.complete = AsyncMock(side_effect=[
            ModelReply([ToolUsePart("t1", "list_agents")]),
            ModelReply([TextPart("One agent is registered.")]),
        ])
        ollama.health_check = AsyncMock(return_value=True)
        ollama.close = AsyncMock()

        tools = MagicMock()
        tools.start = AsyncMock()
        tools.close = AsyncMock()
        tools.is_running = True
        tools.list_tools = AsyncMock(return_value=[
            {"name": "list_agents", "description": "List registered agents",
             "inputSchema": {"type": "object", "properties": {}}},
        ])
        from attestchat.proxy.toolserver import ToolCallResult
        tools.call_tool = AsyncMock(return_value=ToolCallResult(texts=["d432fbb3"]))

        return Services.build(cfg, ollama_client=ollama, tools=tools)

    @pytest.fixture
    def client(self, cfg, services):
        from fastapi.testclient import TestClient
        from attestchat.proxy.server import create_app

        with TestClient(create_app(cfg, services=services)) as c:
            yield c

    @staticmethod
    def wait_for(client, predicate, timeout=5.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            if predicate(client):
                return
            time.sleep(0.02)
        pytest.fail("condition not reached")

    def test_index(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert "EventSource" in resp.text

    def test_blank_message_rejected(self, client):
        assert client.post("/api/chat", json={"message": "   "}).status_code == 400

    def test_missing_message_field(self, client):
        assert client.post("/api/chat", json={}).status_code == 422

    def test_approve_with_nothing_pending(self, client):
        assert client.post("/api/tool/approve").json()["status"] == "noop"
        assert client.post("/api/tool/deny").json()["status"] == "noop"

    def test_tools(self, client):
        data = client.get("/api/tools").json()
        assert data["count"] == 1
        assert data["tools"][0]["name"] == "list_agents"

    def test_status(self, client):
        data = client.get("/api/status").json()
        assert data["status"] == "ok"
        assert data["tool_server"]["tools"] == 1
        assert data["agent"]["phase"] == "idle"

    def test_chat_approve_flow(self, client, services):
        assert client.post("/api/chat", json={"message": "List agents"}).status_code == 202
        self.wait_for(client, lambda c: c.get("/api/status").json()["agent"]["phase"] == "awaiting_approval")

        resp = client.post("/api/tool/approve").json()
        assert resp == {"status": "ok", "tool_id": "t1", "tool_name": "list_agents"}
        self.wait_for(client, lambda c: len(c.get("/api/history").json()["messages"]) == 4)

        messages = client.get("/api/history").json()["messages"]
        assert messages[2]["content"][0] == {
            "type": "tool_result", "tool_use_id": "t1", "name": "list_agents",
            "content": "d432fbb3", "is_error": False,
        }
        services.tools.call_tool.assert_awaited_once_with("list_agents", {})

    def test_reset(self, client):
        client.post("/api/chat", json={"message": "List agents"})
        self.wait_for(client, lambda c: c.get("/api/status").json()["agent"]["phase"] == "awaiting_approval")
        assert client.post("/api/reset").json()["status"] == "ok"
        assert client.get("/api/history").json()["messages"] == []
        assert client.post("/api/tool/approve").json()["status"] == "noop"

    def test_chat_deny_flow(self, client, services):
        client.post("/api/chat", json={"message": "List agents"})
        self.wait_for(client, lambda c: c.get("/api/status").json()["agent"]["phase"] == "awaiting_approval")

        resp = client.post("/api/tool/deny").json()
        assert resp == {"status": "ok", "tool_id": "t1", "tool_name": "list_agents"}
        assert client.post("/api/tool/deny").json()["status"] == "noop"
        self.wait_for(client, lambda c: len(c.get("/api/history").json()["messages"]) == 4)

        result = client.get("/api/history").json()["messages"][2]["content"][0]
        assert result["content"] == "Tool execution denied by user."
        assert result["is_error"] is True
        services.tools.call_tool.assert_not_called()

    @pytest.mark.asyncio
    async def test_event_stream(self, cfg, services):
        from sse_starlette.sse import ServerSentEvent
        from attestchat.proxy.agent.formatters import done_event, tool_request_event, user_message_event
        from attestchat.proxy.agent.models import ToolRequest
        from attestchat.proxy.server import create_app

        app = create_app(cfg, services=services)
        endpoint = next(r.endpoint for r in app.routes if getattr(r, "path", None) == "/api/events")
        bus = services.bus

        bus.publish(user_message_event("sent before anyone listened"))

        request = MagicMock()
        request.app.state.services = services
        request.is_disconnected = AsyncMock(side_effect=[False, False, True])
        response = await endpoint(request)
        assert bus.subscriber_count == 1

        bus.publish(user_message_event("List agents"))
        bus.publish(tool_request_event(ToolRequest("t1", "list_agents")))
        bus.publish(done_event("complete"))

        frames = [frame async for frame in response.body_iterator]

        # the client disconnected before the third event
        assert [f["event"] for f in frames] == ["user-message", "tool-request"]
        first, second = (json.loads(f["data"]) for f in frames)
        assert first == {"type": "user-message", "role": "user", "text": "List agents"}
        assert second["tool_id"] == "t1"
        assert second["tool_name"] == "list_agents"
        assert b"event: tool-request" in ServerSentEvent(**frames[1]).encode()
        assert bus.subscriber_count == 0
