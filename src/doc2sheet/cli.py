import argparse
import sys
from pathlib import Path
from typing import List

from doc2sheet.flow import extraction_batch_flow, extraction_flow
from doc2sheet.results import BatchResult


def check_inputs(paths: List[Path]) -> List[str]:
    missing = [p for p in paths if not p.is_file()]
    if missing:
        raise FileNotFoundError(f"Input file not found: {missing[0]}")
    return [str(p) for p in paths]


def print_summary(paths: List[str], batch: BatchResult) -> None:
    print("\nBatch Summary")
    print("=" * 40)
    print(f"Total   : {len(batch.results)}")
    print(f"Success : {batch.succeeded}")
    print(f"Failed  : {batch.failed}")
    print()

    if batch.succeeded:
        print("Spreadsheets:")
        for path, r in zip(paths, batch.results):
            if r.status == "ok":
                print(f"- {path}: {r.sheet_url}")
        print()

    if batch.failed:
        print("Failures:")
        for path, r in zip(paths, batch.results):
            if r.status == "failed":
                print(
                    f"- {path} [{r.stage}] {r.error_type}: {r.reason}\n"
                    f"  artifact: {r.failure_artifact}"
                )
        print()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Extract the table from PDFs or images into new spreadsheets"
    )
    parser.add_argument(
        "files",
        nargs="+",
        type=Path,
        help="PDF or image files (only page 1 of a PDF is read)",
    )

    args = parser.parse_args()
    paths = check_inputs(args.files)

    if len(paths) == 1:
        result = extraction_flow(paths[0])
        batch = BatchResult(results=[result])
    else:
        batch = extraction_batch_flow(paths)

    print_summary(paths, batch)
    sys.exit(1 if batch.failed else 0)


if __name__ == "__main__":
    main()
