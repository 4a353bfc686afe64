import stat
import sys
from pathlib import Path

import pytest

# Stand-in for the opencode CLI. Behaviour is driven by tokens in the prompt:
#   session=ID   tag every JSON event with sessionID=ID
#   say=TEXT     emit a text event (underscores become spaces)
#   tick=N       emit N tool_use events, 0.1s apart
#   sleep=S      sleep S seconds before finishing
#   warn=TEXT    write TEXT to stderr
#   exit=N       exit with code N (writes "boom" to stderr)
#   raw          print a plain, non-JSON line
#   args         emit the argv as a JSON text event
#   classify=LABEL:CONF  answer an intent-classification prompt
# `models` prints two model ids.
FAKE_AGENT_SOURCE = '''
import json
import sys
import time


def emit(event_type, session, **part):
    payload = {"type": event_type, "part": part}
    if session:
        payload["sessionID"] = session
    sys.stdout.write(json.dumps(payload) + "\\n")
    sys.stdout.flush()


def main(argv):
    if argv[:1] == ["models"]:
        print("fake/model-a")
        print("fake/model-b")
        return 0

    prompt = argv[1] if len(argv) > 1 else ""
    tokens = {}
    flags = set()
    for word in prompt.split():
        if "=" in word:
            key, value = word.split("=", 1)
            tokens[key] = value
        else:
            flags.add(word)
    session = tokens.get("session")

    if prompt.startswith("Only classify the intent"):
        label, _, conf = tokens.get("classify", "task:0.9").partition(":")
        emit("text", session, text=json.dumps({"label": label, "confidence": float(conf or 0)}))
        return 0

    emit("step_start", session)
    if "warn" in tokens:
        sys.stderr.write(tokens["warn"] + "\\n")
        sys.stderr.flush()
    for _ in range(int(tokens.get("tick", 0))):
        emit("tool_use", session, tool="bash", state={"status": "running", "input": {"command": "echo tick"}})
        time.sleep(0.1)
    if "raw" in flags:
        print("plain output line", flush=True)
    if "args" in flags:
        emit("text", session, text=json.dumps(argv))
    if "sleep" in tokens:
        time.sleep(float(tokens["sleep"]))
    if "say" in tokens:
        emit("text", session, text=tokens["say"].replace("_", " "))
    emit("step_finish", session)
    if "exit" in tokens:
        sys.stderr.write("boom\\n")
        return int(tokens["exit"])
    return 0


sys.exit(main(sys.argv[1:]))
'''


@pytest.fixture
def fake_agent(tmp_path: Path) -> Path:
    """Executable script that mimics `opencode run --format json`."""
    script = tmp_path / "fake-opencode"
    script.write_text(f"#!{sys.executable}\n{FAKE_AGENT_SOURCE}", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path
