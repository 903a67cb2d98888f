from __future__ import annotations

import argparse
import json
from pathlib import Path

from backend.serveai.main import create_app


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Write the ShimmyServe OpenAPI schema to disk.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("openapi") / "openapi.json",
        help="Destination file (default: openapi/openapi.json).",
    )
    return parser.parse_args(argv)


def export_schema(output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    schema = create_app().openapi()
    output_path.write_text(json.dumps(schema, indent=2, sort_keys=True), encoding="utf-8")
    return output_path


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    schema_path = export_schema(args.output)
    print(f"Wrote OpenAPI schema to {schema_path}")


if __name__ == "__main__":
    main()
