from __future__ import annotations

from . import utils
from .models import OpportunityRecord, SourceConfig


def build_tables(
    by_platform: dict[str, list[OpportunityRecord]],
    configs: dict[str, SourceConfig] | None = None,
) -> str:
    """
    HTML sections grouped by platform, in priority order:

      <h3 style="color:...">{icon} {platform}</h3>
      <table>
        Title | Category | Deadline | Link
        ...
      </table>
    """
    configs = configs or {}

    def _order(platform: str) -> tuple[int, str]:
        cfg = configs.get(platform)
        return (cfg.priority if cfg else 100, platform)

    sections: list[str] = []
    for platform in sorted(by_platform, key=_order):
        items = by_platform[platform]
        if not items:
            continue
        cfg = configs.get(platform) or SourceConfig()
        row_html: list[str] = []
        for r in items:
            link_html = f'<a href="{utils.esc(r.url)}">{utils.esc(r.url)}</a>'
            row_html.append(
                f"<tr><td>{utils.esc(r.title or '(no title)')}</td>"
                f"<td>{utils.esc(r.category)}</td>"
                f"<td>{utils.esc(r.deadline)}</td>"
                f"<td>{link_html}</td></tr>"
            )
        table_html = (
            "<table border='1' cellspacing='0' cellpadding='6'>"
            "<tr><th>Title</th><th>Category</th><th>Deadline</th><th>Link</th></tr>" + "".join(row_html) + "</table>"
        )
        heading = f"{cfg.display_icon} {platform}"
        sections.append(f"<h3 style=\"color:{utils.esc(cfg.display_color)}\">{utils.esc(heading)}</h3>\n{table_html}")
    return "\n".join(sections)


def wrap_document(content_html: str, *, heading: str | None = None, intro: str | None = None) -> str:
    parts: list[str] = ["<div>"]
    if heading:
        parts.append(f"<h2>{utils.esc(heading)}</h2>")
    if intro:
        parts.append(f"<p>{utils.esc(intro)}</p>")
    parts.append(content_html)
    parts.append("</div>")
    return "\n".join(parts)
