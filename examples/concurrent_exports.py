"""Timing comparison between sequential and concurrent exports."""

import asyncio
import sys
import tempfile
import time
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, "src")

from imgex import export_filesystem

IMAGES = ["alpine:3.19", "busybox:1.36", "debian:bookworm-slim"]


async def sequential_exports(output_dir: Path):
    """Export each image after the previous one finished."""
    start_time = time.time()

    paths = []
    for index, image in enumerate(IMAGES):
        paths.append(await export_filesystem(image, output_dir / f"seq-{index}.tar"))

    return time.time() - start_time, paths


async def concurrent_exports(output_dir: Path):
    """Export every image at once; each job keeps its own client and temp files."""
    start_time = time.time()

    tasks = [
        export_filesystem(image, output_dir / f"conc-{index}.tar")
        for index, image in enumerate(IMAGES)
    ]
    paths = await asyncio.gather(*tasks)

    return time.time() - start_time, paths


async def main():
    print(f"Export Comparison: {len(IMAGES)} images")
    print("=" * 50)

    with tempfile.TemporaryDirectory() as tmp:
        output_dir = Path(tmp)

        print("\n1. Sequential Exports:")
        sequential_time, paths = await sequential_exports(output_dir)
        total = sum(path.stat().st_size for path in paths)
        print(f"   Time: {sequential_time:.2f} seconds")
        print(f"   Archive bytes: {total:,}")

        print("\n2. Concurrent Exports:")
        concurrent_time, paths = await concurrent_exports(output_dir)
        total = sum(path.stat().st_size for path in paths)
        print(f"   Time: {concurrent_time:.2f} seconds")
        print(f"   Archive bytes: {total:,}")

    if concurrent_time > 0:
        print(f"\nSpeedup: {sequential_time / concurrent_time:.2f}x")


if __name__ == "__main__":
    asyncio.run(main())
