from ocbridge.agent.cards import CardBuilder, build_status_card, format_uptime
from ocbridge.agent.formatter import (
    ResponseFormatter,
    beautify_output,
    concise,
    describe_cancel_reason,
    extract_highlights,
    extract_image_refs,
    format_duration,
    has_markdown_structure,
    normalize_output,
    split_message,
    strip_ansi,
    wants_detail,
)
from ocbridge.agent.task import (
    REASON_NO_PROGRESS,
    REASON_USER,
    STATUS_COMPLETED,
    STATUS_FAILED,
    TaskInfo,
)
from ocbridge.config.schema import ResponseConfig


def make_task(output: str = "", **kwargs) -> TaskInfo:
    task = TaskInfo(id="task_1_abcd", command=kwargs.pop("command", "do it"), user_id="u", chat_id="c", **kwargs)
    if output:
        task.output.append(output)
    return task


def test_strip_ansi() -> None:
    assert strip_ansi("\u001b[31mred\u001b[0m") == "red"
    assert strip_ansi("\u001b]0;title\u0007text") == "text"


def test_normalize_output_collapses_duplicates_and_blank_runs() -> None:
    raw = "\u001b[32mok\u001b[0m  \nok\n\n\n\nnext\r\nnext\n"
    assert normalize_output(raw) == "ok\n\nnext"
    assert normalize_output("") == ""


def test_has_markdown_structure() -> None:
    assert has_markdown_structure("# Title\nbody")
    assert has_markdown_structure("intro\n- item")
    assert has_markdown_structure("| a | b |")
    assert not has_markdown_structure("just a sentence.")


def test_beautify_reflows_long_plain_paragraphs() -> None:
    sentence = "This sentence is long enough to push the paragraph over the limit."
    text = " ".join([sentence] * 6)
    result = beautify_output(text)
    assert result.count("\n\n") == 1
    # Structured output is left alone.
    assert beautify_output("- a\n- b") == "- a\n- b"


def test_wants_detail() -> None:
    assert wants_detail("show the full output please")
    assert wants_detail("给我详细的结果")
    assert not wants_detail("fix the bug")
    assert not wants_detail("no details, just the summary")
    assert not wants_detail("不需要详细")
    assert not wants_detail("")


def test_concise_short_text_unchanged() -> None:
    assert concise("done") == "done"


def test_concise_prefers_list_items_and_is_idempotent() -> None:
    text = "Intro line.\n" + "\n".join(f"- item {i} " + "x" * 50 for i in range(20))
    once = concise(text)
    assert once.splitlines()[0].startswith("- item 0")
    assert len(once.splitlines()) <= 6
    assert len(once) <= 900
    assert concise(once) == once


def test_concise_prose_is_bounded() -> None:
    text = " ".join(f"Sentence number {i} explains something." for i in range(80))
    result = concise(text)
    assert len(result) <= 900
    assert concise(result) == result


def test_extract_highlights() -> None:
    assert extract_highlights("Summary\n1. first\n2. second\n- third\n- fourth") == [
        "first",
        "second",
        "third",
    ]
    assert extract_highlights("One. Two. Three. Four.") == ["One.", "Two.", "Three."]


def test_extract_image_refs() -> None:
    text = "See ![chart](https://x.test/c.png) and /tmp/out/plot.jpg, also ./shot.webp"
    assert extract_image_refs(text) == ["https://x.test/c.png", "/tmp/out/plot.jpg", "./shot.webp"]
    assert extract_image_refs("no images here") == []


def test_split_message() -> None:
    assert split_message("short", 10) == ["short"]
    chunks = split_message("line one\nline two\nline three", 12)
    assert chunks == ["line one", "line two", "line three"]
    assert all(len(c) <= 12 for c in split_message("x" * 50, 12))
    assert split_message("def f():\n    return 1", 12) == ["def f():", "    return 1"]
    assert split_message("alpha beta gamma", 11) == ["alpha beta", "gamma"]


def test_describe_cancel_reason() -> None:
    assert describe_cancel_reason(REASON_USER) == "cancelled at your request"
    assert "inactivity" in describe_cancel_reason(REASON_NO_PROGRESS)
    assert describe_cancel_reason(None) == "cancelled at your request"
    assert describe_cancel_reason("other") == "cancelled (other)"


def test_format_duration() -> None:
    assert format_duration(None) == "-"
    assert format_duration(0.25) == "250ms"
    assert format_duration(12.34) == "12.3s"
    assert format_duration(125) == "2m 5s"
    assert format_duration(3725) == "1h 2m"


def test_completed_without_output() -> None:
    formatter = ResponseFormatter(ResponseConfig())
    task = make_task(status=STATUS_COMPLETED, duration=1.5)

    rendered = formatter.completed(task)
    assert rendered.text.startswith("✅ Task completed in 1.5s (no output)")
    assert rendered.card is None

    assert formatter.completed(task, silent=True).text == "(no output)"


def test_completed_short_plain_output_is_text() -> None:
    formatter = ResponseFormatter(ResponseConfig())
    task = make_task("All tests pass.", status=STATUS_COMPLETED, duration=2.0)

    rendered = formatter.completed(task)
    assert rendered.card is None
    assert "All tests pass." in rendered.text
    assert rendered.continuation == []


def test_completed_structured_output_uses_card() -> None:
    formatter = ResponseFormatter(ResponseConfig())
    output = "## Changes\n- fixed login\n- added tests\n\nSee https://example.com/pr/1"
    task = make_task(output, status=STATUS_COMPLETED, duration=3.0, model="fake/model-a")

    rendered = formatter.completed(task)
    assert rendered.card is not None
    header = rendered.card["header"]["title"]["content"]
    assert header.startswith("✅ Task completed")
    note = rendered.card["elements"][0]["elements"][0]["content"]
    assert "fake/model-a" in note
    # The text fallback always carries the body.
    assert "fixed login" in rendered.text


def test_card_skips_highlights_that_repeat_the_body() -> None:
    formatter = ResponseFormatter(ResponseConfig(card_dedup_threshold=0.5))
    output = "- fixed login\n- added tests"
    task = make_task(output, status=STATUS_COMPLETED, duration=1.0)

    rendered = formatter.completed(task)
    contents = [e.get("text", {}).get("content", "") for e in rendered.card["elements"]]
    assert not any(c.startswith("**Highlights**") for c in contents)


def test_card_disabled_falls_back_to_text() -> None:
    formatter = ResponseFormatter(ResponseConfig(result_card_enabled=False))
    task = make_task("# Heading\nbody", status=STATUS_COMPLETED, duration=1.0)
    assert formatter.completed(task).card is None


def test_long_output_is_summarised_unless_detail_requested() -> None:
    formatter = ResponseFormatter(ResponseConfig())
    output = "\n".join(f"- step {i} " + "y" * 80 for i in range(40))
    task = make_task(output, status=STATUS_COMPLETED, duration=1.0)

    short = formatter.completed(task)
    assert "Summary shown" in short.text
    assert short.continuation == []

    full = formatter.completed(task, detail=True)
    assert "Summary shown" not in full.text
    assert full.continuation
    combined = full.text + "\n".join(full.continuation)
    assert "step 39" in combined


def test_silent_completion_is_raw_output() -> None:
    formatter = ResponseFormatter(ResponseConfig(message_max_len=50))
    task = make_task("word " * 30, status=STATUS_COMPLETED, duration=1.0)

    rendered = formatter.completed(task, silent=True)
    assert not rendered.text.startswith("✅")
    assert rendered.continuation
    assert rendered.card is None


def test_failed_includes_reason_and_stderr_tail() -> None:
    formatter = ResponseFormatter(ResponseConfig())
    task = make_task(status=STATUS_FAILED, error="Process exited with code 2")
    task.stderr.append("line1\nline2\nline3\nfatal: broken\n")

    rendered = formatter.failed(task)
    assert "Process exited with code 2" in rendered.text
    assert "fatal: broken" in rendered.text
    assert "line1" not in rendered.text
    assert formatter.failed(task, silent=True).text == "❌ Process exited with code 2"


def test_cancelled_message() -> None:
    formatter = ResponseFormatter(ResponseConfig())
    task = make_task(duration=4.0)
    text = formatter.cancelled(task, REASON_NO_PROGRESS).text
    assert "task_1_abcd" in text
    assert "inactivity" in text
    assert "4.0s" in text


def test_progress_status_lines_are_deduplicated() -> None:
    formatter = ResponseFormatter(ResponseConfig(progress_max_lines=2))
    task = make_task()

    rendered = formatter.progress(task, ["🧠 Analyzing", "🔧 a", "🧠 Analyzing", "🔧 b"], status_only=True)
    assert rendered is not None
    assert rendered.text.splitlines()[1:] == ["• 🧠 Analyzing", "• 🔧 b"]
    assert formatter.progress(task, ["  "], status_only=True) is None


def test_progress_text_preview_is_truncated() -> None:
    formatter = ResponseFormatter(ResponseConfig())
    rendered = formatter.progress(make_task(), ["z" * 2000], status_only=False)
    assert rendered is not None
    assert len(rendered.text) < 600


def test_queued_and_started() -> None:
    formatter = ResponseFormatter(ResponseConfig())
    task = make_task(model="fake/model-a")
    assert "position 2" in formatter.queued(task, 2).text
    started = formatter.started(task).text
    assert "task_1_abcd" in started
    assert "fake/model-a" in started


def test_history_text() -> None:
    assert ResponseFormatter.history_text([]) == "No tasks yet."
    tasks = [make_task(command=f"job {i}", status=STATUS_COMPLETED) for i in range(7)]
    text = ResponseFormatter.history_text(tasks)
    assert "job 0" not in text
    assert "job 6" in text


def test_card_builder_and_status_card() -> None:
    card = CardBuilder("Title", subtitle="sub", template="green").add_markdown("hi").add_divider().build()
    assert card["header"]["template"] == "green"
    assert card["elements"] == [{"tag": "div", "text": {"tag": "lark_md", "content": "hi"}}, {"tag": "hr"}]

    status = build_status_card(
        version="1.0",
        uptime_s=3700,
        active_sessions=2,
        running_tasks=1,
        queued_tasks=0,
        connection_mode="feishu",
    )
    body = "\n".join(e["text"]["content"] for e in status["elements"])
    assert "1h 1m" in body
    assert "Active sessions: 2" in body
    assert format_uptime(59) == "59s"
