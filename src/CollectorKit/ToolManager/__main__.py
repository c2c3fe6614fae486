"""Allow ``python -m CollectorKit.ToolManager``."""

from .cli import app

if __name__ == "__main__":
    app(prog_name="toolmgr")
