"""Markdown report of a curated selection."""

from datetime import datetime
from pathlib import Path

from feed_curator.core.entities import Category, DiversitySelection, RankedItem

CATEGORY_TITLES = {
    Category.NEWSLETTERS: "📬 Newsletters",
    Category.PODCASTS: "🎧 Podcasts",
    Category.TECH_ARTICLES: "🛠️ Tech Articles",
    Category.AI_NEWS: "🤖 AI News",
    Category.PRODUCT_NEWS: "🚀 Product News",
    Category.COMMUNITY: "💬 Community",
    Category.RESEARCH: "📄 Research",
}


class MarkdownDigestGenerator:
    """Render a ``DiversitySelection`` as markdown."""

    def generate(
        self,
        selection: DiversitySelection,
        category: Category,
        window_days: float,
        generated_at: datetime,
    ) -> str:
        title = CATEGORY_TITLES.get(category, category.value)
        lines = [
            f"# {title}: top picks for {generated_at.strftime('%d.%m.%Y')}",
            "",
            f"Window: last {window_days:g} day(s) · Selected: {len(selection.selected)}",
            "",
        ]

        if not selection.selected:
            lines.append("No items matched this category and window.")
            return "\n".join(lines) + "\n"

        for rank, ranked in enumerate(selection.selected, 1):
            lines.extend(self._format_entry(rank, ranked, selection.reasons.get(ranked.item.id, "")))

        excluded = {item_id: reason for item_id, reason in selection.reasons.items() if reason.startswith("Excluded")}
        if excluded:
            lines.extend([
                "---",
                "",
                f"_{len(excluded)} item(s) skipped by diversity rules._",
                "",
            ])

        return "\n".join(lines)

    def _format_entry(self, rank: int, ranked: RankedItem, reason: str) -> list[str]:
        """Format single selected item."""
        item, score = ranked.item, ranked.score
        heading = f"[{item.title}]({item.url})" if item.url else item.title
        lines = [
            f"## {rank}. {heading}",
            "",
            f"**Source:** {item.source} · **Published:** {item.published_at.strftime('%Y-%m-%d %H:%M')} UTC"
            f" · **Score:** {score.final:.2f}",
            "",
        ]
        if item.snippet:
            lines.extend([item.snippet, ""])
        if score.tags:
            lines.extend(["**Tags:** " + ", ".join(score.tags), ""])
        details = f"<sub>{score.reasoning}</sub>" if score.reasoning else ""
        if reason:
            details = f"<sub>{reason}</sub>" + (f" {details}" if details else "")
        if details:
            lines.extend([details, ""])
        return lines

    def save(self, content: str, output_path: Path) -> None:
        """Write the report, creating parent directories."""
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(content, encoding="utf-8")
