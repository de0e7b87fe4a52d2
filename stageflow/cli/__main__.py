#!/usr/bin/env python3
"""Entry point for stageflow CLI when run as python -m stageflow.cli."""

if __name__ == "__main__":
    from stageflow.cli.main import main

    main()
