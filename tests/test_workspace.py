import io
import json
import re
import tarfile

import pytest

from conftest import FakeClient, completion, text_chunks, tool_call
from sigrid.errors import ParseError, PreconditionError, SandboxViolation
from sigrid.models import WrittenFile
from sigrid.persistence import FileSystemPersistence, InMemoryPersistence
from sigrid.progress import ProgressEvent, ToolAction
from sigrid.prompts import (
    PURE_MODE_INSTRUCTIONS,
    READONLY_TOOLING_PROMPT,
    SNAPSHOT_HEADER,
    STATIC_CONTEXT_PROMPT,
    TOOLING_PROMPT,
    get_prompt,
)
from sigrid.workspace import create_workspace, open_workspace

STAGES = [
    ProgressEvent.SNAPSHOT_GENERATING,
    ProgressEvent.SNAPSHOT_GENERATED,
    ProgressEvent.RESPONSE_WAITING,
    ProgressEvent.RESPONSE_RECEIVED,
    ProgressEvent.RESPONSE_STREAMING,
    ProgressEvent.RESPONSE_STREAMED,
    ProgressEvent.FILES_WRITING,
    ProgressEvent.FILES_WRITTEN,
]


def _stages(recorder):
    return [e for e in recorder.names() if e in STAGES]


def _tarball(members):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, text in members.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


# ---------------------------------------------------------------------------
# execute(mode="static")
# ---------------------------------------------------------------------------


def test_static_execute_writes_sg_files(workspace, ws_root, events):
    (ws_root / "README.md").write_text("# Demo\n")
    body = 'console.log("hi");'
    client = FakeClient([completion(f'Done.\n<sg-file path="src/hello.js">{body}</sg-file>')])

    result = workspace.execute("add src/hello.js printing hello", mode="static", client=client, progress_callback=events)

    assert result.files_written == [WrittenFile(path="src/hello.js", size=len(body))]
    assert (ws_root / "src/hello.js").read_text() == body
    assert _stages(events) == [
        ProgressEvent.SNAPSHOT_GENERATING,
        ProgressEvent.SNAPSHOT_GENERATED,
        ProgressEvent.RESPONSE_WAITING,
        ProgressEvent.RESPONSE_RECEIVED,
        ProgressEvent.FILES_WRITING,
        ProgressEvent.FILES_WRITTEN,
    ]
    assert events.of(ProgressEvent.FILES_WRITTEN) == [{"count": 1}]
    assert events.of(ProgressEvent.SNAPSHOT_GENERATED)[0]["files"] == 1

    messages = client.payloads[0]["messages"]
    assert messages[0] == {"role": "system", "content": get_prompt(STATIC_CONTEXT_PROMPT)}
    assert messages[1]["role"] == "user"
    assert messages[1]["content"].startswith(SNAPSHOT_HEADER + "\n\n")
    assert '<file path="README.md">\n# Demo\n\n</file>' in messages[1]["content"]
    assert messages[-1] == {"role": "user", "content": "add src/hello.js printing hello"}
    assert "tools" not in client.payloads[0]


def test_static_execute_with_serialized_snapshot_and_prompts(workspace, events):
    client = FakeClient([completion("No changes needed.")])

    result = workspace.execute(
        "check",
        mode="static",
        snapshot='<file path="x.ts">\nlet x;\n</file>',
        prompts=["Focus on x.ts", "Be brief"],
        instructions="You are careful.",
        client=client,
        progress_callback=events,
    )

    assert result.files_written == []
    assert ProgressEvent.SNAPSHOT_GENERATING not in events.names()
    messages = client.payloads[0]["messages"]
    assert [m["role"] for m in messages] == ["system", "system", "user", "user", "user"]
    assert messages[0]["content"] == "You are careful."
    assert messages[2]["content"] == f'{SNAPSHOT_HEADER}\n\n<file path="x.ts">\nlet x;\n</file>\n\nFocus on x.ts'
    assert messages[3]["content"] == "Be brief"
    assert events.of(ProgressEvent.FILES_WRITTEN) == [{"count": 0}]


def test_static_snapshot_options_are_honored(workspace, ws_root):
    (ws_root / "a.md").write_text("A")
    (ws_root / "b.md").write_text("B")
    client = FakeClient([completion("ok")])
    workspace.execute("q", mode="static", snapshot={"include": ["a.md"]}, client=client)
    context = client.payloads[0]["messages"][1]["content"]
    assert 'path="a.md"' in context
    assert 'path="b.md"' not in context


def test_static_streaming_emits_file_events_and_writes(workspace, ws_root, events):
    delivered = []
    chunks = text_chunks("Sure.\n<sg-fi", 'le path="notes/todo.md">\n- one', "\n- two\n</sg-", "file>\nBye.")
    client = FakeClient(streams=[chunks])

    result = workspace.execute(
        "write todo",
        mode="static",
        stream=True,
        stream_callback=delivered.append,
        client=client,
        progress_callback=events,
    )

    assert result.content == ""
    assert "".join(delivered) == 'Sure.\n<sg-file path="notes/todo.md">\n- one\n- two\n</sg-file>\nBye.'
    assert (ws_root / "notes/todo.md").read_text() == "- one\n- two"
    assert result.files_written == [WrittenFile(path="notes/todo.md", size=len("- one\n- two"))]
    assert _stages(events) == [
        ProgressEvent.SNAPSHOT_GENERATING,
        ProgressEvent.SNAPSHOT_GENERATED,
        ProgressEvent.RESPONSE_STREAMING,
        ProgressEvent.RESPONSE_STREAMED,
        ProgressEvent.FILES_WRITING,
        ProgressEvent.FILES_WRITTEN,
    ]
    assert events.of(ProgressEvent.FILE_STREAMING_START) == [{"path": "notes/todo.md", "action": "create"}]
    assert events.of(ProgressEvent.FILE_STREAMING_END) == [{"path": "notes/todo.md", "full_content": "- one\n- two"}]
    names = events.names()
    assert names.index(ProgressEvent.FILE_STREAMING_END) < names.index(ProgressEvent.FILES_WRITING)


def test_static_unterminated_output_surfaces_partial(workspace, ws_root, events):
    client = FakeClient([completion('<sg-file path="a.md">A</sg-file>\n<sg-file path="b.md">B is cut')])
    with pytest.raises(ParseError) as info:
        workspace.execute("q", mode="static", client=client, progress_callback=events)
    assert [w.path for w in info.value.partial] == ["a.md"]
    assert info.value.result.files_written == info.value.partial
    assert (ws_root / "a.md").read_text() == "A"
    assert events.of(ProgressEvent.FILES_WRITTEN) == [{"count": 1}]


def test_static_escape_is_fatal(workspace, ws_root):
    client = FakeClient([completion('<sg-file path="../../etc/evil.md">x</sg-file>')])
    with pytest.raises(SandboxViolation):
        workspace.execute("q", mode="static", client=client)


def test_invalid_mode(workspace):
    with pytest.raises(PreconditionError, match="Invalid mode"):
        workspace.execute("q", mode="turbo", client=FakeClient([completion("x")]))


def test_snapshot_to_sg_file_round_trip(workspace, ws_root):
    (ws_root / "src").mkdir()
    (ws_root / "src/a.ts").write_text("export const a = 1;\n")
    (ws_root / "b.md").write_text("# B")
    snap = workspace.create_snapshot()
    emitted = "\n".join(f'<sg-file path="{f.path}">\n{f.content}\n</sg-file>' for f in snap.files)

    workspace.deserialize_xml_output(emitted)

    assert workspace.snapshot() == snap.xml


# ---------------------------------------------------------------------------
# execute(mode="dynamic")
# ---------------------------------------------------------------------------


def test_dynamic_execute_writes_through_tools(workspace, ws_root, events):
    client = FakeClient([
        completion(None, tool_calls=[tool_call("call_1", "write_file", {"filepath": "docs/plan.md", "content": "step 1"})]),
        completion("Wrote the plan."),
    ])

    result = workspace.execute("plan it", client=client, progress_callback=events)

    assert result.content == "Wrote the plan."
    assert result.files_written == [WrittenFile(path="docs/plan.md", size=6)]
    assert (ws_root / "docs/plan.md").read_text() == "step 1"

    first = client.payloads[0]
    assert {t["function"]["name"] for t in first["tools"]} == {"read_file", "list_dir", "write_file", "write_multiple_files"}
    assert first["tool_choice"] == "auto"
    assert first["messages"][0] == {"role": "system", "content": get_prompt(TOOLING_PROMPT)}
    assert [e for e in events.names() if isinstance(e, ToolAction)] == [ToolAction.start, ToolAction.succeed]
    assert _stages(events) == [ProgressEvent.RESPONSE_WAITING, ProgressEvent.RESPONSE_RECEIVED]


def test_dynamic_execute_records_multi_file_writes(workspace, ws_root):
    files = [{"filepath": "a.md", "content": "a"}, {"filepath": "bad.exe", "content": "b"}, {"filepath": "c.txt", "content": "cc"}]
    client = FakeClient([
        completion(None, tool_calls=[tool_call("call_1", "write_multiple_files", {"files": files})]),
        completion("done"),
    ])
    result = workspace.execute("write", client=client)
    assert [(w.path, w.size) for w in result.files_written] == [("a.md", 1), ("c.txt", 2)]


def test_dynamic_tool_cannot_escape_workspace(workspace, ws_root):
    client = FakeClient([
        completion(None, tool_calls=[tool_call("call_1", "write_file", {"filepath": "../escape.md", "content": "x"})]),
        completion("sorry"),
    ])
    result = workspace.execute("escape", client=client)
    assert result.files_written == []
    assert not (ws_root.parent / "escape.md").exists()
    tool_output = json.loads([m for m in client.payloads[1]["messages"] if m["role"] == "tool"][0]["content"])
    assert tool_output["ok"] is False
    assert "outside sandbox" in tool_output["error"]


def test_dynamic_custom_executor_without_path_is_not_recorded(workspace):
    client = FakeClient([
        completion(None, tool_calls=[
            tool_call("call_1", "write_file", {"filepath": "a.md", "content": "a"}),
            tool_call("call_2", "write_multiple_files", {"files": []}),
        ]),
        completion("done"),
    ])

    def executor(name, args, progress_callback, workspace):
        if name == "write_multiple_files":
            return {"ok": True, "results": [{"ok": True}, {"ok": True, "path": "b.md", "size": 2}]}
        return {"ok": True}

    result = workspace.execute("go", client=client, tool_executor=executor)

    outputs = [json.loads(m["content"]) for m in client.payloads[1]["messages"] if m["role"] == "tool"]
    assert outputs[0] == {"ok": True}
    assert outputs[1]["ok"] is True
    assert result.files_written == [WrittenFile(path="b.md", size=2)]


def test_dynamic_pure_mode_is_read_only(workspace, ws_root):
    client = FakeClient([
        completion(None, tool_calls=[tool_call("call_1", "write_file", {"filepath": "a.md", "content": "a"})]),
        completion("just text"),
    ])

    result = workspace.execute("describe", client=client, pure=True, instruction="Be brief.")

    first = client.payloads[0]
    assert sorted(t["function"]["name"] for t in first["tools"]) == ["list_dir", "read_file"]
    system = [m["content"] for m in first["messages"] if m["role"] == "system"]
    assert system[:2] == ["Be brief.", get_prompt(READONLY_TOOLING_PROMPT)]
    assert system[2:] == PURE_MODE_INSTRUCTIONS
    assert result.files_written == []
    assert not (ws_root / "a.md").exists()


def test_static_execute_accepts_single_instruction(workspace):
    client = FakeClient([completion("nothing to do")])
    workspace.execute("q", mode="static", client=client, instructions=["A"], instruction="B")
    system = [m["content"] for m in client.payloads[0]["messages"] if m["role"] == "system"]
    assert system == ["A", "B", get_prompt(STATIC_CONTEXT_PROMPT)]


# ---------------------------------------------------------------------------
# chat()
# ---------------------------------------------------------------------------


def test_chat_includes_rules_and_structure_and_never_writes(workspace, ws_root):
    (ws_root / "AI_RULES.md").write_text("Always use tabs.")
    (ws_root / "src").mkdir()
    (ws_root / "src/main.ts").write_text("main()")
    store = InMemoryPersistence()
    client = FakeClient([completion('Here is how: <sg-file path="src/main.ts">rewritten</sg-file>')])

    result = workspace.chat("how is main started?", conversation_persistence=store, client=client)

    messages = client.payloads[0]["messages"]
    assert messages[0] == {"role": "system", "content": "Always use tabs."}
    structure = [m["content"] for m in messages if m["role"] == "user" and m["content"].startswith("Workspace file structure:")]
    assert structure and "src/main.ts" in structure[0] and "AI_RULES.md" in structure[0]
    assert "tools" not in client.payloads[0]
    assert (ws_root / "src/main.ts").read_text() == "main()"
    assert result.files_written is None
    assert [m["role"] for m in store.get(result.conversation_id)] == ["user", "assistant"]


def test_chat_include_workspace_flags(workspace, ws_root):
    (ws_root / "AI_RULES.md").write_text("rules")
    (ws_root / "a.md").write_text("A")
    client = FakeClient([completion("ok")])

    workspace.chat("q", include_workspace={"ai_rules": False, "file_structure": False, "files": True}, instruction="Be short.", client=client)

    messages = client.payloads[0]["messages"]
    assert messages[0] == {"role": "system", "content": "Be short."}
    assert all(m["content"] != "rules" for m in messages)
    snapshot_prompts = [m for m in messages if m["role"] == "user" and m["content"].startswith(SNAPSHOT_HEADER)]
    assert len(snapshot_prompts) == 1
    assert '<file path="a.md">\nA\n</file>' in snapshot_prompts[0]["content"]


def test_chat_rejects_tools(workspace):
    with pytest.raises(PreconditionError):
        workspace.chat("q", tools=[{"type": "function", "name": "write_file"}], client=FakeClient([completion("x")]))


def test_chat_and_execute_share_a_conversation(workspace):
    store = InMemoryPersistence()
    client = FakeClient([completion("first"), completion("second")])
    first = workspace.chat("hello", conversation_persistence=store, client=client)
    workspace.execute(
        "now change it",
        mode="static",
        snapshot="",
        conversation=True,
        conversation_persistence=store,
        conversation_id=first.conversation_id,
        client=client,
    )
    history = store.get(first.conversation_id)
    assert [m["content"] for m in history] == ["hello", "first", "now change it", "second"]


# ---------------------------------------------------------------------------
# compact_history()
# ---------------------------------------------------------------------------


def _sg(*paths):
    return "\n".join(f'<sg-file path="{p}">\n{"x" * 200}\n</sg-file>' for p in paths)


def _seed(store, conversation_id="conv"):
    for message in [
        {"role": "user", "content": "make a, b, c"},
        {"role": "assistant", "content": "Here:\n" + _sg("a", "b", "c")},
        {"role": "user", "content": "again"},
        {"role": "assistant", "content": _sg("a", "b", "c")},
        {"role": "assistant", "content": "no files here"},
    ]:
        store.append(conversation_id, json.dumps(message))


def test_compact_history_rewrites_file_bearing_messages(workspace):
    store = InMemoryPersistence()
    _seed(store)
    original_length = len(store.get("conv")[1]["content"])

    result = workspace.compact_history("conv", persistence=store, mode="files-only")

    assert result.messages_compacted == 2
    assert result.messages_processed == 5
    assert result.compacted_tokens < result.original_tokens
    assert re.fullmatch(r"\d+\.\d%", result.reduction)
    stored = store.get("conv")
    assert stored[1]["content"] == "Modified: a, b, c"
    assert stored[1]["_original_length"] == original_length
    assert stored[3]["content"] == "Modified: a, b, c"
    assert stored[0] == {"role": "user", "content": "make a, b, c"}
    assert stored[4] == {"role": "assistant", "content": "no files here"}

    again = workspace.compact_history("conv", persistence=store)
    assert again.messages_compacted == 0
    assert again.reduction == "0.0%"


def test_compact_history_dry_run_leaves_store_untouched(workspace):
    store = InMemoryPersistence()
    _seed(store)
    before = json.dumps(store.get("conv"))
    result = workspace.compact_history("conv", persistence=store, dry_run=True)
    assert result.messages_compacted == 2
    assert json.dumps(store.get("conv")) == before


def test_compact_history_on_filesystem_store(workspace, tmp_path):
    store = FileSystemPersistence(tmp_path / "convs")
    _seed(store)
    workspace.compact_history("conv", persistence=store)
    lines = (tmp_path / "convs" / "conv.jsonl").read_text().splitlines()
    assert len(lines) == 5
    assert json.loads(lines[3])["content"] == "Modified: a, b, c"


def test_compact_history_without_replace_uses_delete_and_append(workspace):
    class MinimalStore:
        def __init__(self):
            self.data = {}

        def get(self, cid):
            return [dict(m) for m in self.data[cid]] if cid in self.data else None

        def append(self, cid, serialized):
            self.data.setdefault(cid, []).append(json.loads(serialized))

        def delete(self, cid):
            self.data.pop(cid, None)

    store = MinimalStore()
    _seed(store)
    workspace.compact_history("conv", persistence=store)
    assert [m["content"] for m in store.get("conv")][1] == "Modified: a, b, c"
    assert len(store.get("conv")) == 5


def test_compact_history_empty_conversation(workspace):
    result = workspace.compact_history("missing", persistence=InMemoryPersistence())
    assert (result.messages_processed, result.reduction) == (0, "0%")


def test_compact_history_preconditions(workspace):
    with pytest.raises(PreconditionError, match="conversationPersistence required"):
        workspace.compact_history("conv")
    with pytest.raises(PreconditionError, match="conversationID required"):
        workspace.compact_history("", persistence=InMemoryPersistence())
    with pytest.raises(PreconditionError, match="Unsupported compaction mode"):
        workspace.compact_history("conv", persistence=InMemoryPersistence(), mode="everything")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_create_populate_export_delete(tmp_path):
    tarball = _tarball({"pkg/package.json": '{"name": "demo"}', "pkg/src/index.js": "run();"})
    ws = create_workspace(tarball, base_dir=tmp_path, strip=1)

    assert re.fullmatch(r"[0-9a-f]{16}", ws.id)
    assert ws.path == (tmp_path / ws.id).resolve()
    assert ws.populated
    assert ws.metadata.workspace_id == ws.id
    assert (ws.path / "src/index.js").read_text() == "run();"

    with tarfile.open(fileobj=io.BytesIO(ws.export()), mode="r:gz") as tar:
        names = sorted(tar.getnames())
    assert names == ["package.json", "src/index.js"]

    ws.delete()
    assert not ws.path.exists()
    with pytest.raises(PreconditionError, match="already deleted"):
        ws.delete()


def test_populate_from_file_path(tmp_path):
    archive = tmp_path / "src.tar.gz"
    archive.write_bytes(_tarball({"a.md": "A"}))
    ws = create_workspace(base_dir=tmp_path / "spaces")
    assert not ws.populated
    assert ws.populate_with_tarball(archive) == 1
    assert (ws.path / "a.md").read_text() == "A"


def test_populate_rejects_escaping_members(workspace):
    with pytest.raises(SandboxViolation):
        workspace.populate_with_tarball(_tarball({"../evil.js": "x"}))


def test_open_workspace_validation(tmp_path):
    with pytest.raises(PreconditionError, match="must be a string"):
        open_workspace(42)
    with pytest.raises(PreconditionError, match="does not exist"):
        open_workspace(tmp_path / "nope")
    (tmp_path / "file.txt").write_text("x")
    with pytest.raises(PreconditionError, match="is not a directory"):
        open_workspace(tmp_path / "file.txt")


def test_open_workspace_initializes_metadata(ws_root):
    (ws_root / "a.md").write_text("A")
    ws = open_workspace(ws_root)
    assert ws.populated
    md = json.loads((ws_root / ".sigrid/metadata.json").read_text())
    assert md["workspaceId"] == "ws"
    assert ws.id == "ws"


def test_workspace_addon_and_snapshot_exclusion(workspace):
    workspace.apply_addon({"name": "kit", "files": {"src/kit.js": "k", "src/kit.internal.js": "i"}, "internal": ["src/kit.internal.js"]})
    assert workspace.is_addon_applied({"name": "kit", "files": {}})
    paths = [f.path for f in workspace.create_snapshot().files]
    assert "src/kit.js" in paths
    assert "src/kit.internal.js" not in paths
