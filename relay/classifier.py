"""Response classification for engine output.

Decides whether a reply is a final answer or a question that should be
offered to the user as inline choices. The heuristic is deliberately
conservative: a missed question is shown as plain text and the user can
still type an answer, while a false pause would stall the conversation.
"""

import re

from relay.models import ChoiceOption, ClassifiedResponse

MAX_OPTIONS = 6
MAX_LABEL_LENGTH = 64

# Phrases that mark a trailing question as a request for a decision.
CHOICE_MARKERS: tuple[str, ...] = (
    "which would you prefer",
    "which do you prefer",
    "what would you like",
    "which should i",
    "which option",
    "please choose",
    "please select",
    "would you like me to",
    "should i",
    "do you want me to",
    "what do you think",
    "your preference",
    "your choice",
)

# Question openings that can be answered with a plain yes or no.
YES_NO_TRIGGERS: tuple[str, ...] = (
    "should i",
    "would you like me to",
    "do you want me to",
    "shall i",
    "can i proceed",
    "go ahead",
)

YES_NO_OPTIONS = (
    ChoiceOption(label="Yes, go ahead", value="yes"),
    ChoiceOption(label="No, skip", value="no"),
)

_OPTION_LINE = re.compile(r"^\s*(\d+)\.\s+(.+?)\s*$", re.MULTILINE)


def _truncate_label(label: str) -> str:
    if len(label) <= MAX_LABEL_LENGTH:
        return label
    return label[: MAX_LABEL_LENGTH - 3].rstrip() + "..."


def extract_options(text: str) -> list[ChoiceOption]:
    """Collect numbered list items as choices, capped at MAX_OPTIONS.

    Args:
        text: Engine output

    Returns:
        Options in order of appearance; the numeral is the value
    """
    options: list[ChoiceOption] = []
    for match in _OPTION_LINE.finditer(text):
        number, body = match.group(1), match.group(2)
        options.append(
            ChoiceOption(label=_truncate_label(f"{number}. {body}"), value=number)
        )
        if len(options) == MAX_OPTIONS:
            break
    return options


def _question_line(lines: list[str]) -> str | None:
    """Return the line that carries the question.

    Normally the last line. When the reply ends with the option list
    itself, the line just above that list is the question.
    """
    index = len(lines) - 1
    while index >= 0 and _OPTION_LINE.match(lines[index]):
        index -= 1
    return lines[index] if index >= 0 else None


def classify(text: str) -> ClassifiedResponse:
    """Classify engine output as final text or a question needing a choice.

    Args:
        text: Raw engine output

    Returns:
        ClassifiedResponse; options is empty when no pause is needed
    """
    trimmed = (text or "").strip()
    if not trimmed:
        return ClassifiedResponse(text="", needs_input=False, question=None, options=[])

    lines = [line.strip() for line in trimmed.splitlines() if line.strip()]
    question = _question_line(lines)
    options = extract_options(trimmed)

    lowered = trimmed.lower()
    has_marker = any(marker in lowered for marker in CHOICE_MARKERS)
    needs_input = (
        question is not None
        and question.endswith("?")
        and (len(options) >= 2 or has_marker)
    )

    if not needs_input:
        return ClassifiedResponse(
            text=trimmed, needs_input=False, question=None, options=[]
        )

    if not options:
        question_lower = question.lower()
        if any(trigger in question_lower for trigger in YES_NO_TRIGGERS):
            options = list(YES_NO_OPTIONS)

    return ClassifiedResponse(
        text=trimmed, needs_input=True, question=question, options=options
    )
