"""Ask-user-question tool exposed to the agent.

The agent sends an ordered list of questions; the operator answers
through the user-question callback (the question modal). The answers
come back as a mapping from question text to answer string:

- single-select: the chosen label, or the free text typed under
  "Other", or "" when nothing was chosen;
- multi-select: the chosen labels joined with ", " in selection order.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import UserQuestionCallback

logger = logging.getLogger(__name__)

ASK_USER_TOOL = "mcp__obsidian__ask_user"


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(frozen=True)
class AskUserQuestion:
    question: str
    header: str = ""
    options: tuple[QuestionOption, ...] = ()
    multi_select: bool = False


@dataclass
class QuestionSelection:
    """Raw operator input for one question, in click order."""
    labels: list[str] = field(default_factory=list)
    other_text: str | None = None


def parse_questions(tool_input: dict[str, Any]) -> list[AskUserQuestion]:
    """Extract questions from ``{"questions": [...]}`` tool input.

    Entries without question text are skipped.
    """
    if not isinstance(tool_input, dict):
        return []
    raw_questions = tool_input.get("questions")
    if not isinstance(raw_questions, list):
        return []

    questions: list[AskUserQuestion] = []
    for raw in raw_questions:
        if not isinstance(raw, dict):
            continue
        text = str(raw.get("question", "")).strip()
        if not text:
            continue
        options: list[QuestionOption] = []
        for opt in raw.get("options") or []:
            if isinstance(opt, dict) and opt.get("label"):
                options.append(QuestionOption(
                    label=str(opt["label"]),
                    description=str(opt.get("description", "")),
                ))
            elif isinstance(opt, str) and opt:
                options.append(QuestionOption(label=opt))
        questions.append(AskUserQuestion(
            question=text,
            header=str(raw.get("header", "")),
            options=tuple(options),
            multi_select=bool(raw.get("multiSelect", raw.get("multi_select", False))),
        ))
    return questions


def collect_answers(
    questions: Sequence[AskUserQuestion],
    selections: Sequence[QuestionSelection | None],
) -> dict[str, str]:
    """Turn raw selections into the answer mapping returned to the agent."""
    answers: dict[str, str] = {}
    for index, question in enumerate(questions):
        selection = selections[index] if index < len(selections) else None
        if selection is None:
            answers[question.question] = ""
            continue
        if question.multi_select:
            parts = list(selection.labels)
            if selection.other_text:
                parts.append(selection.other_text)
            answers[question.question] = ", ".join(parts)
        elif selection.other_text is not None:
            answers[question.question] = selection.other_text
        elif selection.labels:
            answers[question.question] = selection.labels[-1]
        else:
            answers[question.question] = ""
    return answers


def _text_result(text: str, is_error: bool = False) -> dict[str, Any]:
    result: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["is_error"] = True
    return result


class AskUserTool:
    """Runs the ask-user tool over the user-question callback."""

    name = ASK_USER_TOOL

    def __init__(self, callback: UserQuestionCallback | None) -> None:
        self._callback = callback

    async def run(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        questions = parse_questions(tool_input)
        if not questions:
            logger.warning(
                "ask_user called without usable questions: %s",
                str(tool_input)[:200],
            )
            return _text_result("No questions provided.", is_error=True)

        if self._callback is None:
            logger.warning("ask_user called but no question handler is configured")
            return _text_result(
                "User question handler not configured.", is_error=True,
            )

        logger.info(
            "Asking user %d question(s): %s",
            len(questions),
            questions[0].question[:80],
        )
        try:
            answers = await self._callback(questions)
        except Exception as exc:
            logger.exception("User question callback failed")
            return _text_result(f"Failed to ask user: {exc}", is_error=True)

        # Every question gets an entry, even if the UI left it out
        normalized = {q.question: str(answers.get(q.question, "")) for q in questions}
        return _text_result(json.dumps({"answers": normalized}, indent=2))
