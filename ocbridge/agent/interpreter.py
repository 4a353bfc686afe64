"""Command interpreter: turns raw chat text into a structured intent."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Union

from ocbridge.config.schema import NOTIFY_MODES

HINT_TASK = "task"
HINT_CHAT = "chat"
HINT_AMBIGUOUS = "ambiguous"

_AT_TAG = re.compile(r"<at\b[^>]*>.*?</at>", re.IGNORECASE | re.DOTALL)
_ALIAS_PREFIX = re.compile(r"^/?(?:opencode|oc)\s+(.+)$", re.IGNORECASE | re.DOTALL)
_BUILTIN = re.compile(r"^!(\S+)(?:\s+(.*))?$", re.DOTALL)

_RESET_EXPLICIT = re.compile(r"^[/!]new(?:\s+session)?(?:\s+(.+))?$", re.IGNORECASE | re.DOTALL)
_RESET_NATURAL = (
    re.compile(r"(新开|新建|重新开|重新开始|重置)\s*(一个|一下|本次|当前)?\s*(session|会话|上下文)", re.I),
    re.compile(
        r"\b(?:start|open|begin|create)\s+(?:a\s+)?(?:new|fresh)\s+(?:session|conversation|context|chat)\b",
        re.I,
    ),
    re.compile(r"\breset\s+(?:the\s+|this\s+)?(?:session|conversation|context)\b", re.I),
)
_REMAINDER_LEAD = re.compile(r"^[，,。.!！？?:：;；\s\-]+")

_MODEL_CMD = re.compile(r"^[/!]model(?:\s+(.+))?$", re.IGNORECASE | re.DOTALL)
_NOTIFY_CMD = re.compile(r"^[/!]notify(?:\s+(.+))?$", re.IGNORECASE | re.DOTALL)
_AGENT_CMD = re.compile(r"^[/!]agent(?:\s+(.+))?$", re.IGNORECASE | re.DOTALL)

_STRUCTURAL_TASK = re.compile(r"```|`[^`]+`|/[\w.\-]+|\.[a-z0-9]{1,6}\b", re.IGNORECASE)
_TASK_KEYWORDS = re.compile(
    r"(修复|实现|编写|写一个|创建|生成|搜索|查找|分析|总结|整理|翻译|运行|执行|部署|安装|调试|测试|重构|报错|错误|异常"
    r"|review|fix|implement|create|generate|search|analy[sz]e|summari[sz]e|refactor|write|run|execute"
    r"|deploy|install|debug|test|command|script|file|bug|issue)",
    re.IGNORECASE,
)
_LOCAL_OPS_KEYWORDS = re.compile(
    r"(内存|磁盘|进程|服务|端口|日志|负载"
    r"|(?<![a-z])(?:cpu|memory|disk|process(?:es)?|services?|ports?|logs?|uptime|load average)(?![a-z]))",
    re.IGNORECASE,
)
_REQUEST_PREFIX = re.compile(r"^(请|帮我|麻烦|给我|please\b|can you\b|could you\b)", re.IGNORECASE)
_GREETING = re.compile(
    r"^(在吗|在线吗|你在吗|你好|嗨|hello|hi|hey|早上好|晚上好|午安|谢谢|感谢|收到|ok|好的|辛苦了"
    r"|thanks|thank you|good morning|good evening)[!?？。！.\s]*$",
    re.IGNORECASE,
)
_CHAT_QUESTION = re.compile(
    r"(你是谁|你叫什么|你会什么|你能做什么|当前(使用)?模型|用的.*模型|什么模型|哪个模型|状态如何|status|health"
    r"|还在吗|忙吗|你在吗|在线吗|在吗|在不在|在嘛|who are you|what can you do|which model|are you there)",
    re.IGNORECASE,
)
_THANKS = re.compile(r"^(谢谢|感谢|多谢|辛苦了|thanks\b|thank you\b|many thanks\b)", re.IGNORECASE)
_SMALL_TALK = re.compile(r"(hello|\bhi\b|\bhey\b|你好|嗨|哈喽|在吗|在线吗|你在吗|在不在|忙吗|在嘛)", re.IGNORECASE)
_EXPLICIT_TASK = re.compile(
    r"(修复|实现|编写|创建|生成|搜索|查找|分析|运行|执行|部署|安装|调试|测试|报错|错误|异常|代码|文件|命令"
    r"|fix|implement|create|generate|search|run|execute|debug|test|file|command|bug|issue)",
    re.IGNORECASE,
)

_BUILTIN_ALIASES = {
    "help": "help",
    "h": "help",
    "status": "status",
    "s": "status",
    "history": "history",
    "hist": "history",
    "clear": "clear",
    "c": "clear",
}

USAGE_EMPTY = "Please send a task to run, e.g. `@bot fix the failing test in auth.ts`"
USAGE_SENDFILE = "Usage: `!sendfile <local file path>`"
USAGE_NOTIFY = "Usage: `/notify quiet|normal|debug|current`"
USAGE_AGENT = "Usage: `/agent execute|guide|current`"


@dataclass
class BuiltinIntent:
    name: str  # help, status, history, clear, sendfile, cancel
    argument: str = ""


@dataclass
class ResetIntent:
    command: str | None = None
    hint: str | None = None


@dataclass
class ModelIntent:
    action: str  # current, list, reset, set
    model: str | None = None


@dataclass
class NotifyIntent:
    mode: str | None = None  # None shows the current mode


@dataclass
class AgentPreferenceIntent:
    execute_first: bool | None = None  # None shows the current preference


@dataclass
class ExecuteIntent:
    command: str
    hint: str = HINT_AMBIGUOUS


@dataclass
class ReplyIntent:
    text: str


Intent = Union[
    BuiltinIntent,
    ResetIntent,
    ModelIntent,
    NotifyIntent,
    AgentPreferenceIntent,
    ExecuteIntent,
    ReplyIntent,
]


def _trim_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def looks_like_task(text: str) -> bool:
    if len(text) >= 90 or "\n" in text:
        return True
    if _STRUCTURAL_TASK.search(text):
        return True
    if _TASK_KEYWORDS.search(text) or _LOCAL_OPS_KEYWORDS.search(text):
        return True
    return bool(_REQUEST_PREFIX.search(text)) and len(text) > 20


def looks_like_chat(text: str) -> bool:
    normalized = text.strip()
    short = len(normalized) <= 50
    if _GREETING.search(normalized):
        return True
    if short and _THANKS.search(normalized):
        return True
    if short and _CHAT_QUESTION.search(normalized):
        return True
    if short and _SMALL_TALK.search(normalized) and not _EXPLICIT_TASK.search(normalized):
        return True
    return short and normalized.endswith(("?", "？")) and not looks_like_task(normalized)


def infer_intent_hint(command: str) -> str:
    text = command.strip()
    if not text:
        return HINT_AMBIGUOUS
    if looks_like_task(text):
        return HINT_TASK
    if looks_like_chat(text):
        return HINT_CHAT
    return HINT_AMBIGUOUS


class CommandInterpreter:
    """
    Parse a chat message into an intent.

    Precedence: built-ins, session reset, /model, /notify, /agent, then
    execution. Returns None when the message should be ignored.
    """

    def __init__(
        self,
        require_mention: bool = True,
        bot_aliases: Iterable[str] = ("opencode", "bot", "机器人"),
    ):
        self.require_mention = require_mention
        aliases = [re.escape(a) for a in bot_aliases if a]
        self._alias_mention = (
            re.compile(rf"@(?:{'|'.join(aliases)})", re.IGNORECASE) if aliases else None
        )

    def interpret(
        self,
        text: str,
        mentions: Iterable[str] = (),
        chat_type: str = "p2p",
    ) -> Intent | None:
        text = (text or "").strip()
        if not text:
            return None
        mentions = [m for m in mentions if m]

        has_mention = (
            bool(mentions)
            or bool(_AT_TAG.search(text))
            or bool(self._alias_mention and self._alias_mention.search(text))
        )
        if chat_type == "group" and self.require_mention and not has_mention:
            return None

        text = self.strip_mentions(text, mentions)
        if not text:
            return None

        if not text.startswith("!"):
            prefixed = _ALIAS_PREFIX.match(text)
            if prefixed:
                text = f"!{prefixed.group(1).strip()}"

        return (
            self._builtin(text)
            or self._reset(text)
            or self._model(text)
            or self._notify(text)
            or self._agent(text)
            or self._execute(text)
        )

    def strip_mentions(self, text: str, mentions: Iterable[str] = ()) -> str:
        text = _AT_TAG.sub(" ", text)
        for key in mentions:
            text = text.replace(key, " ")
        if self._alias_mention:
            text = self._alias_mention.sub(" ", text)
        lines = [re.sub(r"[ \t　]+", " ", line).strip() for line in text.splitlines()]
        return "\n".join(line for line in lines if line).strip()

    def _builtin(self, text: str) -> Intent | None:
        match = _BUILTIN.match(text)
        if not match:
            return None
        name = match.group(1).lower()
        argument = (match.group(2) or "").strip()

        if name == "sendfile":
            if not argument:
                return ReplyIntent(USAGE_SENDFILE)
            return BuiltinIntent("sendfile", _trim_quotes(argument))
        if name in ("cancel", "stop"):
            return BuiltinIntent("cancel", argument)
        if name in _BUILTIN_ALIASES and not argument:
            return BuiltinIntent(_BUILTIN_ALIASES[name])
        return None

    def _reset(self, text: str) -> Intent | None:
        explicit = _RESET_EXPLICIT.match(text)
        if explicit:
            follow_up = (explicit.group(1) or "").strip()
            if follow_up:
                return ResetIntent(follow_up, infer_intent_hint(follow_up))
            return ResetIntent()

        for pattern in _RESET_NATURAL:
            if pattern.search(text):
                remainder = _REMAINDER_LEAD.sub("", pattern.sub(" ", text, count=1).strip()).strip()
                if remainder:
                    return ResetIntent(remainder, infer_intent_hint(remainder))
                return ResetIntent()
        return None

    def _model(self, text: str) -> Intent | None:
        match = _MODEL_CMD.match(text)
        if not match:
            return None
        arg = (match.group(1) or "").strip()
        lowered = arg.lower()
        if not arg or lowered == "current":
            return ModelIntent("current")
        if lowered in ("list", "reset"):
            return ModelIntent(lowered)
        return ModelIntent("set", arg)

    def _notify(self, text: str) -> Intent | None:
        match = _NOTIFY_CMD.match(text)
        if not match:
            return None
        arg = (match.group(1) or "").strip().lower()
        if not arg or arg == "current":
            return NotifyIntent()
        if arg in NOTIFY_MODES:
            return NotifyIntent(arg)
        return ReplyIntent(USAGE_NOTIFY)

    def _agent(self, text: str) -> Intent | None:
        match = _AGENT_CMD.match(text)
        if not match:
            return None
        arg = (match.group(1) or "").strip().lower()
        if not arg or arg == "current":
            return AgentPreferenceIntent()
        if arg in ("execute", "exec", "on"):
            return AgentPreferenceIntent(True)
        if arg in ("guide", "off"):
            return AgentPreferenceIntent(False)
        return ReplyIntent(USAGE_AGENT)

    def _execute(self, text: str) -> Intent:
        command = text[1:].strip() if text.startswith("!") else text.strip()
        if not command:
            return ReplyIntent(USAGE_EMPTY)
        return ExecuteIntent(command, infer_intent_hint(command))
