from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

console = Console(highlight=False, soft_wrap=True)

LEVEL_STYLES = {
    "INFO": "cyan",
    "SUCCESS": "green",
    "WARNING": "yellow",
    "ERROR": "bold red",
}


def log(level: str, message: str) -> None:
    """Prints one leveled, timestamped log line framed by a rule."""
    level = level.upper()
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    style = LEVEL_STYLES.get(level, "yellow")

    console.rule(style="dim")
    # Text, not markup: messages carry image refs and command output with brackets.
    console.print(Text(f"[{level}] {timestamp} - {message}", style=style))


def info(message: str) -> None:
    log("INFO", message)


def success(message: str) -> None:
    log("SUCCESS", message)


def warning(message: str) -> None:
    log("WARNING", message)


def error(message: str) -> None:
    log("ERROR", message)


def banner(title: str, body: str) -> None:
    console.print(Panel.fit(body, title=title))
