"""Context assembler: token-budgeted context, references and the full prompt.

Pipeline:
  1. Walk the matched sections best-first, adding each one's token count.
     Stop before the section that reaches the cutoff.
  2. Render each kept section as ``Section id: <path>`` + flattened text.
  3. Collect one reference per distinct file path, in first-seen order.
  4. Substitute context, prompt and fallback message into the template.
"""

from __future__ import annotations

import re
import textwrap
from dataclasses import dataclass, field

from docprompt.db.models import RetrievedSection

CONTEXT_INTRO = (
    "Here is some context which might contain valuable information to answer "
    "the question. It is in the form of sections preceded by a section id:"
)


@dataclass
class Reference:
    """A file cited by an answer, with the metadata of its first matched section."""

    path: str
    title: str
    source_type: str
    source_data: dict = field(default_factory=dict)
    file_meta: dict = field(default_factory=dict)
    section_meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "file": {
                "path": self.path,
                "title": self.title,
                "meta": self.file_meta,
                "source": {"type": self.source_type, "data": self.source_data},
            },
            "meta": self.section_meta,
        }


@dataclass
class AssembledContext:
    text: str = ""
    references: list[Reference] = field(default_factory=list)
    sections: list[RetrievedSection] = field(default_factory=list)
    total_tokens: int = 0

    @property
    def reference_paths(self) -> list[str]:
        return [r.path for r in self.references]


def prepare_section_text(text: str) -> str:
    return text.replace("\n", " ").strip()


def _title_for(section: RetrievedSection) -> str:
    title = section.file_meta.get("title")
    if title:
        return title
    name = section.path.rstrip("/").rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[0] if "." in name else name or section.path


def build_reference(section: RetrievedSection) -> Reference:
    return Reference(
        path=section.path,
        title=_title_for(section),
        source_type=section.source_type,
        source_data=section.source_data,
        file_meta=section.file_meta,
        section_meta=section.section_meta,
    )


def assemble_context(
    sections: list[RetrievedSection], context_tokens_cutoff: int = 1_500
) -> AssembledContext:
    """Build the context block and the deduplicated reference list.

    Args:
        sections: Matched sections, most similar first.
        context_tokens_cutoff: The section whose running token total reaches
            this value, and everything after it, is left out.
    """
    parts: list[str] = []
    kept: list[RetrievedSection] = []
    references: list[Reference] = []
    seen_paths: set[str] = set()
    num_tokens = 0

    for section in sections:
        num_tokens += section.token_count
        if num_tokens >= context_tokens_cutoff:
            num_tokens -= section.token_count
            break

        parts.append(f"Section id: {section.path}\n\n{prepare_section_text(section.content)}\n---\n")
        kept.append(section)
        if section.path not in seen_paths:
            seen_paths.add(section.path)
            references.append(build_reference(section))

    return AssembledContext(
        text="".join(parts),
        references=references,
        sections=kept,
        total_tokens=num_tokens,
    )


def build_full_prompt(
    template: str,
    context: str,
    prompt: str,
    i_dont_know_message: str,
    context_tag: str = "{{CONTEXT}}",
    prompt_tag: str = "{{PROMPT}}",
    idk_tag: str = "{{I_DONT_KNOW}}",
    do_not_inject_context: bool = False,
    do_not_inject_prompt: bool = False,
) -> str:
    """Fill *template* with the fallback message, the context and the prompt.

    Without a context tag the context is prepended under an introduction,
    unless *do_not_inject_context*. Without a prompt tag the prompt is
    appended, unless *do_not_inject_prompt*. Tags are looked up in *template*
    only, so tag-like text inside the context or prompt is left as-is.
    """
    has_context = context_tag in template
    has_prompt = prompt_tag in template
    full = _substitute_tags(
        template, {idk_tag: i_dont_know_message, context_tag: context, prompt_tag: prompt}
    )

    if not has_context and not do_not_inject_context:
        full = f"{CONTEXT_INTRO}\n\n---\n\n{context}\n\n---\n\n{full}"

    if not has_prompt and not do_not_inject_prompt:
        full = f"{full}\n\nPrompt: {prompt}\n"

    return textwrap.dedent(full).strip()


def _substitute_tags(template: str, values: dict[str, str]) -> str:
    """Replace the first occurrence of each tag in a single pass over *template*."""
    tags = sorted(values, key=len, reverse=True)
    pattern = re.compile("|".join(re.escape(tag) for tag in tags))
    used: set[str] = set()

    def _replace(match: re.Match) -> str:
        tag = match.group(0)
        if tag in used:
            return tag
        used.add(tag)
        return values[tag]

    return pattern.sub(_replace, template)
