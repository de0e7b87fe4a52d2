"""Entry point for ``python -m stageflow``."""

if __name__ == "__main__":
    from stageflow.cli.main import main

    main()
