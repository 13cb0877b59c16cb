from typing import Optional

import typer


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:  # pragma: no cover
        import story_recall
        from story_recall.config import ConfigManager

        typer.echo(f"story-recall version: {story_recall.__version__}")
        typer.echo(f"Database: {ConfigManager().config.database_path}")
        raise typer.Exit()


app = typer.Typer(name="story-recall")


@app.callback()
def app_callback(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """story-recall - semantic recall of cards and chapter summaries for novel writing."""

    # Configure logging for every command unless --version was specified
    if not version and ctx.invoked_subcommand is not None:
        from story_recall.config import init_logging

        init_logging()


# Register sub-command groups
search_app = typer.Typer(help="Search cards or chapter summaries of a novel")
app.add_typer(search_app, name="search")
