import pytest

from ocbridge.agent.interpreter import (
    HINT_AMBIGUOUS,
    HINT_CHAT,
    HINT_TASK,
    USAGE_AGENT,
    USAGE_EMPTY,
    USAGE_NOTIFY,
    USAGE_SENDFILE,
    AgentPreferenceIntent,
    BuiltinIntent,
    CommandInterpreter,
    ExecuteIntent,
    ModelIntent,
    NotifyIntent,
    ReplyIntent,
    ResetIntent,
    infer_intent_hint,
)


@pytest.fixture
def interpreter() -> CommandInterpreter:
    return CommandInterpreter(require_mention=True)


def test_group_message_without_mention_is_ignored(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("fix the bug", chat_type="group") is None


def test_group_message_with_mention_key(interpreter: CommandInterpreter) -> None:
    intent = interpreter.interpret("@_user_1 !help", mentions=["@_user_1"], chat_type="group")
    assert intent == BuiltinIntent("help")


def test_group_message_with_at_tag(interpreter: CommandInterpreter) -> None:
    intent = interpreter.interpret('<at user_id="ou_1">Bot</at> fix bug', chat_type="group")
    assert isinstance(intent, ExecuteIntent)
    assert intent.command == "fix bug"


def test_group_message_with_alias_mention(interpreter: CommandInterpreter) -> None:
    intent = interpreter.interpret("@bot hello", chat_type="group")
    assert intent == ExecuteIntent("hello", HINT_CHAT)


def test_mention_not_required_when_disabled() -> None:
    relaxed = CommandInterpreter(require_mention=False)
    assert relaxed.interpret("!status", chat_type="group") == BuiltinIntent("status")


def test_empty_and_mention_only_messages(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("") is None
    assert interpreter.interpret("   ") is None
    assert interpreter.interpret("@_user_1", mentions=["@_user_1"], chat_type="group") is None


@pytest.mark.parametrize(
    "text,name",
    [
        ("!help", "help"),
        ("!h", "help"),
        ("!status", "status"),
        ("!s", "status"),
        ("!history", "history"),
        ("!hist", "history"),
        ("!clear", "clear"),
        ("!c", "clear"),
        ("!HELP", "help"),
    ],
)
def test_builtin_aliases(interpreter: CommandInterpreter, text: str, name: str) -> None:
    assert interpreter.interpret(text) == BuiltinIntent(name)


def test_builtin_with_argument_falls_through_to_execution(interpreter: CommandInterpreter) -> None:
    intent = interpreter.interpret("!help me write tests")
    assert isinstance(intent, ExecuteIntent)
    assert intent.command == "help me write tests"


def test_sendfile(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("!sendfile") == ReplyIntent(USAGE_SENDFILE)
    assert interpreter.interpret('!sendfile "my report.pdf"') == BuiltinIntent("sendfile", "my report.pdf")
    assert interpreter.interpret("!sendfile out/a.txt") == BuiltinIntent("sendfile", "out/a.txt")


def test_cancel(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("!cancel") == BuiltinIntent("cancel", "")
    assert interpreter.interpret("!stop task_1_ab") == BuiltinIntent("cancel", "task_1_ab")


def test_opencode_prefix_is_rewritten(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("/oc status") == BuiltinIntent("status")
    assert interpreter.interpret("/opencode history") == BuiltinIntent("history")


def test_explicit_reset(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("/new") == ResetIntent()
    assert interpreter.interpret("/new session") == ResetIntent()
    assert interpreter.interpret("!new fix the bug in app.py") == ResetIntent(
        "fix the bug in app.py", HINT_TASK
    )


def test_natural_language_reset(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("新开一个会话") == ResetIntent()
    assert interpreter.interpret("reset the conversation") == ResetIntent()

    intent = interpreter.interpret("start a new session, then run the tests")
    assert isinstance(intent, ResetIntent)
    assert intent.command == "then run the tests"
    assert intent.hint == HINT_TASK


def test_model_commands(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("/model") == ModelIntent("current")
    assert interpreter.interpret("/model current") == ModelIntent("current")
    assert interpreter.interpret("/model list") == ModelIntent("list")
    assert interpreter.interpret("/model RESET") == ModelIntent("reset")
    assert interpreter.interpret("/model openai/gpt-5") == ModelIntent("set", "openai/gpt-5")


def test_notify_commands(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("/notify") == NotifyIntent()
    assert interpreter.interpret("/notify current") == NotifyIntent()
    assert interpreter.interpret("/notify debug") == NotifyIntent("debug")
    assert interpreter.interpret("/notify loud") == ReplyIntent(USAGE_NOTIFY)


def test_agent_commands(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("/agent") == AgentPreferenceIntent()
    assert interpreter.interpret("/agent execute") == AgentPreferenceIntent(True)
    assert interpreter.interpret("/agent guide") == AgentPreferenceIntent(False)
    assert interpreter.interpret("/agent maybe") == ReplyIntent(USAGE_AGENT)


def test_bare_bang_asks_for_a_task(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("!") == ReplyIntent(USAGE_EMPTY)


def test_execution_keeps_line_breaks(interpreter: CommandInterpreter) -> None:
    intent = interpreter.interpret("fix this\n  second line")
    assert isinstance(intent, ExecuteIntent)
    assert intent.command == "fix this\nsecond line"
    assert intent.hint == HINT_TASK


def test_bang_prefix_is_stripped(interpreter: CommandInterpreter) -> None:
    assert interpreter.interpret("!ls -la") == ExecuteIntent("ls -la", infer_intent_hint("ls -la"))


@pytest.mark.parametrize(
    "text,hint",
    [
        ("fix the login bug in auth.ts", HINT_TASK),
        ("查看 cpu 使用率", HINT_TASK),
        ("please check whether the deployment finished", HINT_TASK),
        ("look at `main.py`", HINT_TASK),
        ("hello", HINT_CHAT),
        ("你好", HINT_CHAT),
        ("which model are you using", HINT_CHAT),
        ("what time is it?", HINT_CHAT),
        ("Is that important?", HINT_CHAT),
        ("Thanks for the support!", HINT_CHAT),
        ("Who won the sports match?", HINT_CHAT),
        ("check the report for me", HINT_AMBIGUOUS),
        ("which process holds port 8080", HINT_TASK),
        ("cpu使用率多少", HINT_TASK),
        ("今天天气", HINT_AMBIGUOUS),
        ("", HINT_AMBIGUOUS),
    ],
)
def test_infer_intent_hint(text: str, hint: str) -> None:
    assert infer_intent_hint(text) == hint
