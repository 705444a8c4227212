"""A Rich-powered console front-end for browsing the study library."""

from __future__ import annotations

from typing import Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..services.cache import CacheSnapshot
from ..services.library import StudyLibrary
from ..services.storage import FolderRecord, LessonRecord, TopicRecord


class ModernUI:
    """Render the folder/topic/lesson hierarchy using Rich widgets."""

    def __init__(self, library: StudyLibrary, *, console: Optional[Console] = None) -> None:
        self._library = library
        self._console = console or Console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(self) -> None:
        snapshot = self._library.snapshot
        console = self._console

        console.rule("[bold magenta]Study Shelf Overview")

        if not snapshot.folders:
            console.print(
                Panel(
                    "No folders have been created yet.\n"
                    "Use [bold]python run.py add-folder NAME[/bold] to create your first one.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        tree_panel = Panel(
            self._build_tree(snapshot),
            title="Library",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([tree_panel, self._build_stats_panel(snapshot)], expand=True, equal=True))
        console.print()
        console.print(
            Text("Tip: pass --style console for a plain-text layout.", style="dim"),
            justify="center",
        )

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    def _build_tree(self, snapshot: CacheSnapshot) -> Tree:
        tree = Tree("[bold cyan]Folders", guide_style="cyan")

        for folder in snapshot.folders:
            folder_node = tree.add(self._build_folder_label(folder))
            topics = snapshot.topics_in(folder.id)
            if not topics:
                folder_node.add("[dim]No topics yet")
                continue

            for topic in topics:
                topic_node = folder_node.add(self._build_topic_label(topic))
                lessons = snapshot.lessons_in(topic.id)
                if not lessons:
                    topic_node.add("[dim]No lessons yet")
                    continue

                for lesson in lessons:
                    topic_node.add(self._build_lesson_label(lesson, snapshot.file_count(lesson.id)))

        return tree

    @staticmethod
    def _build_folder_label(folder: FolderRecord) -> Text:
        label = Text("■ ", style=folder.color)
        label.append(folder.name, style="bold")
        return label

    @staticmethod
    def _build_topic_label(topic: TopicRecord) -> Text:
        return Text(topic.name, style="bright_cyan")

    @staticmethod
    def _build_lesson_label(lesson: LessonRecord, file_count: int) -> Text:
        label = Text(lesson.title, style="white")
        if lesson.date:
            label.append(f"  {lesson.date}", style="dim")

        label.append("  ")
        if file_count or lesson.links:
            label.append(f"📄 {file_count} · 🔗 {len(lesson.links)}", style="green")
        else:
            label.append("No material yet", style="dim")

        if lesson.description:
            label.append("\n")
            label.append(lesson.description, style="dim")
        return label

    def _build_stats_panel(self, snapshot: CacheSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Folders", str(len(snapshot.folders)))
        metrics.add_row("Topics", str(len(snapshot.topics)))
        metrics.add_row("Lessons", str(len(snapshot.lessons)))

        material = Table.grid(expand=True, padding=(0, 1))
        material.add_column(style="dim")
        material.add_column(justify="right", style="bold")
        material.add_row("📄 Files", str(len(snapshot.files)))
        material.add_row("🔗 Links", str(sum(len(lesson.links) for lesson in snapshot.lessons)))
        total_bytes = sum(item.size_bytes or 0 for item in snapshot.files)
        material.add_row("💾 Stored", f"{total_bytes / (1024 * 1024):.1f} MiB")

        body = Group(metrics, Rule(style="magenta"), material)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = ["ModernUI"]
