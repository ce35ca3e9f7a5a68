from conftest import FakeClient, completion, text_chunks
from sigrid.builder import sigrid
from sigrid.persistence import InMemoryPersistence
from sigrid.prompts import PURE_MODE_INSTRUCTIONS
from sigrid.tools import discover_tools


def test_fluent_chain_builds_driver_call():
    client = FakeClient([completion("pong")])
    result = (
        sigrid()
        .client(client)
        .model("tiny")
        .instruction("Be terse.")
        .instruction("Answer in English.")
        .consolidate()
        .prompt("Context line")
        .option(temperature=0)
        .execute("ping")
    )
    assert result.content == "pong"
    payload = client.payloads[0]
    assert payload["model"] == "tiny"
    assert payload["temperature"] == 0
    assert payload["messages"] == [
        {"role": "system", "content": "Be terse.\n\n---\n\nAnswer in English."},
        {"role": "user", "content": "Context line"},
        {"role": "user", "content": "ping"},
    ]


def test_streaming_and_conversation():
    store = InMemoryPersistence()
    delivered = []
    client = FakeClient(streams=[text_chunks("a", "b")])
    result = sigrid().client(client).conversation(store, "c-1").stream(delivered.append).execute("hi")
    assert delivered == ["a", "b"]
    assert result.conversation_id == "c-1"
    assert store.get("c-1")[-1] == {"role": "assistant", "content": "ab"}


def test_workspace_static_mode(ws_root):
    client = FakeClient([completion('<sg-file path="hello.md">hi</sg-file>')])
    result = sigrid().client(client).workspace(ws_root).static().execute("write hello")
    assert [w.path for w in result.files_written] == ["hello.md"]
    assert (ws_root / "hello.md").read_text() == "hi"


def test_pure_and_reasoning_reach_payload():
    client = FakeClient([completion("raw")])
    sigrid().client(client).pure().reasoning("minimal").tools(discover_tools()).execute("emit")
    payload = client.payloads[0]
    assert sorted(t["function"]["name"] for t in payload["tools"]) == ["list_dir", "read_file"]
    assert payload["reasoning"] == {"effort": "minimal"}
    assert [m["content"] for m in payload["messages"] if m["role"] == "system"] == PURE_MODE_INSTRUCTIONS
