"""
Diagnostic: run compression only (no network).
Reports which photos would be resized and how many bytes would go on the wire.
"""

import argparse
import time
from pathlib import Path

from compressor import RawPhoto, _image_size, compress_bytes, is_image, should_compress
from config import Settings
from errors import CompressionError


def diagnose_file(filepath: Path, settings: Settings) -> dict:
    photo = RawPhoto.from_path(filepath)
    report = {
        "file": filepath.name,
        "content_type": photo.content_type,
        "bytes_before": photo.size,
        "bytes_after": photo.size,
        "dimensions": None,
        "action": "skip",
        "error": None,
        "time": 0.0,
    }

    if not is_image(photo.content_type):
        report["action"] = "not an image"
        return report
    try:
        report["dimensions"] = _image_size(photo.source_bytes)
        needs_work = should_compress(photo.source_bytes, photo.content_type, settings)
    except CompressionError as e:
        report["action"] = "FAILED"
        report["error"] = str(e)
        return report
    if not needs_work:
        report["action"] = "as-is"
        return report

    t0 = time.monotonic()
    try:
        out = compress_bytes(photo.source_bytes, settings.max_dimension, settings.jpeg_quality)
    except CompressionError as e:
        report["action"] = "FAILED"
        report["error"] = str(e)
        return report
    finally:
        report["time"] = time.monotonic() - t0

    report["action"] = "compress"
    report["bytes_after"] = len(out)
    report["dimensions_after"] = _image_size(out)
    return report


def main():
    parser = argparse.ArgumentParser(description="Compression dry run over a directory of photos.")
    parser.add_argument("photos", type=Path)
    args = parser.parse_args()

    settings = Settings.from_env()
    files = sorted(p for p in args.photos.iterdir() if p.is_file())
    print(f"Diagnosing {len(files)} files (compression only, NO network)")
    print(f"  max dimension {settings.max_dimension}px, quality {settings.jpeg_quality}, "
          f"threshold {settings.compress_threshold / 1024:.0f}KB\n")

    all_reports = [diagnose_file(f, settings) for f in files]

    print(f"{'File':<30} {'Action':<14} {'Size':>18} {'Before':>10} {'After':>10} {'Time':>8}")
    print("-" * 94)
    for r in all_reports:
        dims = r["dimensions"]
        after = r.get("dimensions_after") or dims
        size = f"{dims[0]}x{dims[1]}" if dims else "?"
        if after and after != dims:
            size += f" -> {after[0]}x{after[1]}"
        print(f"{r['file'][:29]:<30} {r['action']:<14} {size:>18} "
              f"{r['bytes_before'] / 1024:>8.0f}KB {r['bytes_after'] / 1024:>8.0f}KB {r['time']:>7.3f}s")
        if r["error"]:
            print(f"    {r['error']}")

    images = [r for r in all_reports if r["action"] != "not an image"]
    before = sum(r["bytes_before"] for r in images)
    after = sum(r["bytes_after"] for r in images)
    failed = sum(1 for r in images if r["action"] == "FAILED")

    print(f"\n{'=' * 70}")
    print("SUMMARY")
    print(f"{'=' * 70}")
    print(f"  Images:       {len(images)} ({len(all_reports) - len(images)} other files ignored)")
    print(f"  Compressed:   {sum(1 for r in images if r['action'] == 'compress')}")
    print(f"  Sent as-is:   {sum(1 for r in images if r['action'] == 'as-is')}")
    if failed:
        print(f"  FAILED:       {failed} (a real run would abort)")
    if before:
        print(f"  Wire bytes:   {before / 1024:.0f}KB -> {after / 1024:.0f}KB ({(1 - after / before) * 100:.0f}% saved)")


if __name__ == "__main__":
    main()
