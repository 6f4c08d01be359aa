"""A Rich-powered console overview of stored PDFs and the course outline."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..services.blob_store import FileArtifact
from ..services.storage import CourseRepository, StandardRecord


def format_size(size_bytes: int) -> str:
    value = float(size_bytes)
    for unit in ("B", "KB", "MB"):
        if value < 1024 or unit == "MB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} MB"


class ConsoleUI:
    """Render stored artifacts and the curriculum using Rich widgets."""

    def __init__(
        self,
        repository: Optional[CourseRepository] = None,
        *,
        console: Optional[Console] = None,
    ) -> None:
        self._repository = repository
        self._console = console or Console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def show_files(self, artifacts: Sequence[FileArtifact]) -> None:
        console = self._console
        if not artifacts:
            console.print(
                Panel(
                    "No PDFs have been uploaded yet.\n"
                    "Use [bold]python run.py ingest PATH[/bold] to add one.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return
        console.print(self.build_file_table(artifacts))

    def show_curriculum(self) -> None:
        if self._repository is None:
            return
        standards = self._repository.list_standards()
        if not standards:
            self._console.print(Text("No standards have been created yet.", style="dim"))
            return
        self._console.print(
            Panel(self._build_tree(standards), title="Curriculum", border_style="cyan", box=box.ROUNDED)
        )

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    @staticmethod
    def build_file_table(artifacts: Iterable[FileArtifact]) -> Table:
        table = Table(title="Stored PDFs", box=box.ROUNDED, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Size", justify="right")
        table.add_column("URL", style="cyan", overflow="fold")
        for artifact in artifacts:
            table.add_row(artifact.name, format_size(artifact.size_bytes), artifact.url)
        return table

    def _build_tree(self, standards: Iterable[StandardRecord]) -> Tree:
        assert self._repository is not None
        tree = Tree("[bold cyan]Standards", guide_style="cyan")
        for standard in standards:
            standard_node = tree.add(Text(f"{standard.position}. {standard.name}", style="bold"))
            subjects = self._repository.list_subjects(standard.id)
            if not subjects:
                standard_node.add("[dim]No subjects yet")
                continue
            for subject in subjects:
                subject_node = standard_node.add(
                    Text(f"{subject.position}. {subject.name}", style="bright_cyan")
                )
                for chapter in self._repository.list_chapters(subject.id):
                    subject_node.add(Text(f"{chapter.position}. {chapter.name}"))
        return tree


__all__ = ["ConsoleUI", "format_size"]
