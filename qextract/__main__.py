"""
Module entry point for: python -m qextract

Allows running the extractor directly as a module:
    python -m qextract extract <pdf_path> [options]
    python -m qextract serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
