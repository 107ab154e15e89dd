from .commands import app as typer_app
from .utils import setup_logging


def app():
    """Console entry point: installs the Rich log handler, then runs the Typer app."""
    setup_logging()
    typer_app()


if __name__ == "__main__":
    app()
