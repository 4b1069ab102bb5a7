"""
Prompt composition helpers: roles, chat configuration, mentions and the
round-robin room prompt.
"""
from __future__ import annotations

from dataclasses import dataclass
import math
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .conversation import ParticipantKey

PRESET_MODEL_ROLES = [
    "General",
    "Tester",
    "Designer",
    "Product Manager",
    "Developer",
    "Reviewer",
    "Architect",
    "Analyst",
    "Security Engineer",
    "DevOps Engineer",
    "Data Scientist",
    "Researcher",
    "Technical Writer",
    "SRE",
    "QA Engineer",
]

DEFAULT_ROLE = PRESET_MODEL_ROLES[0]

ROLE_ALIASES = {
    "pm": "Product Manager",
    "qa": "QA Engineer",
    "sre": "SRE",
    "devops": "DevOps Engineer",
}

MAX_OUTPUT_LENGTH_CAP = 120000
ELLIPSIS = "…"

MENTION_PATTERN = re.compile(r"(?<!\S)@([A-Za-z0-9][\w.:/-]*)(?:#(\d+))?")


def normalize_role_label(raw: str) -> str:
    trimmed = raw.strip()
    if not trimmed:
        return DEFAULT_ROLE
    alias = ROLE_ALIASES.get(trimmed.lower())
    if alias:
        return alias
    for preset in PRESET_MODEL_ROLES:
        if preset.lower() == trimmed.lower():
            return preset
    return " ".join(word[:1].upper() + word[1:].lower() for word in trimmed.split())


def role_instruction(role: str) -> str:
    return (
        f"You are acting as a {role}. Answer every message consistently from the "
        f"perspective of a {role}, with the priorities and vocabulary of that role."
    )


@dataclass(frozen=True)
class ChatConfiguration:
    enabled: bool = False
    pre_prompt: str = ""
    post_prompt: str = ""
    max_output_length: Optional[int] = None

    @classmethod
    def from_settings(cls, block: Optional[Dict[str, Any]]) -> "ChatConfiguration":
        block = block or {}
        pre = block.get("pre_prompt")
        post = block.get("post_prompt")
        return cls(
            enabled=bool(block.get("enabled")),
            pre_prompt=pre if isinstance(pre, str) else "",
            post_prompt=post if isinstance(post, str) else "",
            max_output_length=_clamp_max_output_length(block.get("max_output_length")),
        )

    @property
    def output_limit(self) -> Optional[int]:
        if not self.enabled or not self.max_output_length:
            return None
        return self.max_output_length


def _clamp_max_output_length(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or value <= 0:
        return None
    return min(int(value), MAX_OUTPUT_LENGTH_CAP)


def apply_chat_configuration(base_prompt: str, config: ChatConfiguration) -> str:
    if not config.enabled:
        return base_prompt
    parts: List[str] = []
    pre = config.pre_prompt.strip()
    post = config.post_prompt.strip()
    if pre:
        parts.append(pre)
    parts.append(base_prompt)
    if post:
        parts.append(post)
    if config.output_limit:
        parts.append(
            f"Output limit: Keep your final response under {config.output_limit} characters."
        )
    return "\n\n".join(parts).strip()


def apply_output_length_limit(output: str, config: ChatConfiguration) -> str:
    limit = config.output_limit
    if not limit or len(output) <= limit:
        return output
    return output[:limit].rstrip() + ELLIPSIS


@dataclass(frozen=True)
class Attachment:
    name: str
    mime_type: str = "text/plain"
    kind: str = "text"
    text_content: Optional[str] = None
    base64_content: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        kind = str(data.get("kind") or "text")
        if kind not in {"text", "image"}:
            raise ValueError(f"Unsupported attachment kind: {kind}")
        return cls(
            name=str(data.get("name") or "attachment"),
            mime_type=str(data.get("mime_type") or "text/plain"),
            kind=kind,
            text_content=data.get("text_content"),
            base64_content=data.get("base64_content"),
        )

    def is_empty(self) -> bool:
        if self.kind == "image":
            return not self.base64_content
        return not (self.text_content or "").strip()


def flatten_attachments(text: str, attachments: Sequence[Attachment]) -> Tuple[str, List[str]]:
    """
    Merge text attachments into the prompt body.

    Returns the merged text and the base64 payloads of image attachments, which
    travel separately as ``images`` on the chat message.
    """
    sections = [text.strip()] if text.strip() else []
    images: List[str] = []
    for attachment in attachments:
        if attachment.kind == "image":
            if attachment.base64_content:
                images.append(attachment.base64_content)
                sections.append(f"[Image: {attachment.name}]")
            continue
        body = (attachment.text_content or "").strip()
        if body:
            sections.append(f"[Attachment: {attachment.name}]\n```\n{body}\n```")
    return "\n\n".join(sections), images


def resolve_mentions(
    text: str,
    participants: Sequence["ParticipantKey"],
) -> Tuple[List["ParticipantKey"], str]:
    """
    Narrow a broadcast with ``@model`` / ``@model#k`` tags.

    ``participants`` must be in session order. Matching tags are removed from
    the text; when nothing matches every participant is targeted and the text
    is returned untouched.
    """
    selected: List["ParticipantKey"] = []
    matched_spans: List[Tuple[int, int]] = []
    for match in MENTION_PATTERN.finditer(text):
        ordinal = match.group(2)
        name = match.group(1)
        end = match.end()
        if ordinal is None:
            # "@alpha." at the end of a sentence
            name = name.rstrip(".:/-")
            end = match.start(1) + len(name)
        name = name.lower()
        instances = [key for key in participants if _model_matches(key.model, name)]
        if not instances:
            continue
        if ordinal is not None:
            position = int(ordinal)
            if position < 1 or position > len(instances):
                continue
            instances = [instances[position - 1]]
        matched_spans.append((match.start(), end))
        for key in instances:
            if key not in selected:
                selected.append(key)

    if not selected:
        return list(participants), text.strip()

    stripped = text
    for start, end in reversed(matched_spans):
        stripped = stripped[:start] + stripped[end:]
    stripped = re.sub(r"[ \t]{2,}", " ", stripped).strip()
    ordered = [key for key in participants if key in selected]
    return ordered, stripped


def _model_matches(model: str, token: str) -> bool:
    lowered = model.lower()
    return lowered == token or lowered.split(":", 1)[0] == token


def build_round_robin_prompt(
    names: Sequence[str],
    transcript: Sequence[Tuple[str, str]],
    speaker: str,
    window: int,
) -> str:
    """Room prompt for one autonomous turn, rebuilt from the shared transcript."""
    visible = list(transcript[-window:]) if window > 0 else list(transcript)
    omitted = len(transcript) - len(visible)
    latest = transcript[-1][0] if transcript else "User"

    lines = [
        "You are taking part in a group conversation between several AI models and a user.",
        f"Participants in this room: {', '.join(names)}.",
        "",
        "Conversation so far:",
    ]
    if omitted:
        lines.append(f"({omitted} earlier messages omitted)")
    for name, content in visible:
        lines.append(f"[{name}]: {content}")
    lines.extend(
        [
            "",
            f"The latest message is from {latest}.",
            f"You are {speaker}. Respond as {speaker}, addressing the latest message "
            "directly. Do not prefix your reply with your name.",
        ]
    )
    return "\n".join(lines)
