"""Markdown handoff files with YAML frontmatter, plus the reader used when assembling directives."""

import logging
from pathlib import Path

import frontmatter

from conductor.interfaces import HandoffContext, HandoffGenerator

logger = logging.getLogger(__name__)

HANDOFF_FILE = "HANDOFF.md"


def read_markdown(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown file with optional YAML frontmatter.

    Returns:
        (content, metadata); metadata is {} when there is no frontmatter.
    """
    post = frontmatter.load(str(file_path))
    return post.content.strip(), dict(post.metadata)


class MarkdownHandoffWriter(HandoffGenerator):
    """Writes stages/<id>/HANDOFF.md."""

    def __init__(self, project_root: Path) -> None:
        self._root = Path(project_root)

    def path_for(self, stage_id: str) -> Path:
        return self._root / "stages" / stage_id / HANDOFF_FILE

    def generate(self, context: HandoffContext) -> Path | None:
        post = frontmatter.Post(
            self._body(context),
            stage=context.stage_id,
            completed_at=context.completed_at,
            next_stage=context.next_stage,
            status="skipped" if context.skipped else "completed",
        )
        if context.validation_score is not None:
            post["validation_score"] = round(context.validation_score, 2)

        path = self.path_for(context.stage_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
        logger.info("Handoff written: %s", path)
        return path

    @staticmethod
    def _body(context: HandoffContext) -> str:
        lines = [f"# Handoff: {context.stage_name}", ""]
        if context.skipped:
            lines.append(f"This stage was skipped. Reason: {context.reason or 'not given'}.")
            lines.append("")
            lines.append("No outputs were produced; the next stage must not rely on them.")
        else:
            lines.append("## Outputs")
            lines.append("")
            lines.extend(f"- {name}" for name in context.outputs)
            if not context.outputs:
                lines.append("- (none)")
            if context.notes:
                lines.extend(["", "## Summary", "", context.notes])
        if context.next_stage:
            lines.extend(["", f"Next stage: {context.next_stage}"])
        return "\n".join(lines)
