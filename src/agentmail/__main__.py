"""Allow `python -m agentmail`; the background daemon re-executes this way."""

from .cli import app


def main() -> None:
    app(prog_name="agentmail")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
