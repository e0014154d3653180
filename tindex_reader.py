#!/usr/bin/env python3
"""
Vector Tile Index Reader v1.0
=============================

Inspect a tile index written by tindex_writer.py: list its records, find the
sources intersecting a view, render a coverage map and check that every
referenced source layer still opens.

Usage:
    python tindex_reader.py info index.shp
    python tindex_reader.py list index.shp
    python tindex_reader.py query index.shp --bbox 0 0 10 10
    python tindex_reader.py coverage index.shp -o coverage.png --labels
    python tindex_reader.py verify index.shp
"""

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import fiona
from PIL import Image, ImageDraw
from shapely.geometry import box, shape

from tindex_writer import DEFAULT_FIELD, Bounds, IndexRecord, open_layer, parse_location


# ============================================================================
# Data Structures
# ============================================================================

@dataclass
class CoverageInfo:
    """Coverage statistics for a tile index."""
    record_count: int
    bounds: Optional[Bounds]
    sources: List[str]


# ============================================================================
# Reader Class
# ============================================================================

class TileIndexReader:
    """Reader for tile index datasets."""

    def __init__(self, filepath, field_name: Optional[str] = None):
        self.filepath = str(filepath)
        self.collection = None
        self.field_name: Optional[str] = None

        self._open()
        self._resolve_field(field_name)

    def _open(self):
        """Open the first layer of the index."""
        if not os.path.exists(self.filepath):
            raise FileNotFoundError(f"File not found: {self.filepath}")
        layers = fiona.listlayers(self.filepath)
        if not layers:
            raise ValueError(f"No layer in tile index: {self.filepath}")
        self.collection = fiona.open(self.filepath, layer=layers[0])

    def _resolve_field(self, field_name: Optional[str]):
        properties = self.collection.schema['properties']
        wanted = (field_name or DEFAULT_FIELD).lower()
        for name in properties:
            if name.lower() == wanted:
                self.field_name = name
                return
        if field_name is None:
            for name, spec in properties.items():
                if spec.startswith('str'):
                    self.field_name = name
                    return
        raise ValueError(f"Can't find {field_name or DEFAULT_FIELD} field in {self.filepath}")

    def close(self):
        if self.collection is not None:
            self.collection.close()
            self.collection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def driver(self) -> str:
        return self.collection.driver

    @property
    def crs_wkt(self) -> str:
        return self.collection.crs_wkt or ''

    def records(self) -> Iterator[IndexRecord]:
        """Iterate over index records that carry a geometry."""
        for feature in self.collection:
            if feature.geometry is None:
                continue
            value = feature.properties.get(self.field_name)
            yield IndexRecord(
                location='' if value is None else str(value),
                bounds=tuple(shape(feature.geometry).bounds),
            )

    def query(self, bounds: Bounds) -> List[IndexRecord]:
        """Records whose rectangle intersects the given bounds."""
        view = box(*bounds)
        return [record for record in self.records()
                if box(*record.bounds).intersects(view)]

    def coverage(self) -> CoverageInfo:
        records = list(self.records())
        if not records:
            return CoverageInfo(record_count=0, bounds=None, sources=[])

        bounds = (
            min(r.bounds[0] for r in records),
            min(r.bounds[1] for r in records),
            max(r.bounds[2] for r in records),
            max(r.bounds[3] for r in records),
        )
        sources = []
        for record in records:
            try:
                path, _ = parse_location(record.location)
            except ValueError:
                path = record.location
            if path not in sources:
                sources.append(path)
        return CoverageInfo(record_count=len(records), bounds=bounds, sources=sources)

    def verify(self) -> List[Tuple[IndexRecord, str]]:
        """Return (record, reason) for every record whose source layer cannot be opened."""
        problems = []
        for record in self.records():
            try:
                path, layer_index = parse_location(record.location)
            except ValueError as e:
                problems.append((record, str(e)))
                continue
            try:
                with open_layer(path, layer_index):
                    pass
            except Exception as e:
                problems.append((record, str(e)))
        return problems


# ============================================================================
# Coverage Renderer
# ============================================================================

class CoverageRenderer:
    """Draw index rectangles onto an image."""

    def __init__(self, reader: TileIndexReader, labels: bool = False):
        self.reader = reader
        self.labels = labels

    def create_coverage_map(
        self,
        size: int = 1024,
        margin: int = 10,
        background_color: Tuple[int, int, int] = (32, 32, 32),
        outline_color: Tuple[int, int, int] = (0, 255, 0),
        label_color: Tuple[int, int, int] = (255, 255, 0),
    ) -> Image.Image:
        """Render every record rectangle, longest side scaled to `size` pixels."""
        coverage = self.reader.coverage()
        if coverage.bounds is None:
            raise ValueError("No records in tile index")

        min_x, min_y, max_x, max_y = coverage.bounds
        span_x = max(max_x - min_x, 1e-9)
        span_y = max(max_y - min_y, 1e-9)
        scale = (size - 2 * margin) / max(span_x, span_y)

        width = int(span_x * scale) + 2 * margin
        height = int(span_y * scale) + 2 * margin
        img = Image.new('RGB', (width, height), background_color)
        draw = ImageDraw.Draw(img)

        def to_pixel(x: float, y: float) -> Tuple[float, float]:
            return (margin + (x - min_x) * scale,
                    height - margin - (y - min_y) * scale)

        for record in self.reader.records():
            x0, y0 = to_pixel(record.bounds[0], record.bounds[3])
            x1, y1 = to_pixel(record.bounds[2], record.bounds[1])
            draw.rectangle([x0, y0, x1, y1], outline=outline_color, width=1)
            if self.labels:
                draw.text((x0 + 3, y0 + 3), Path(record.location).name, fill=label_color)

        return img


# ============================================================================
# CLI Commands
# ============================================================================

def cmd_info(args):
    """Show tile index information."""
    with TileIndexReader(args.input, args.tileindex) as reader:
        coverage = reader.coverage()

        print(f"\n{'='*60}")
        print(f"  Tile Index Information")
        print(f"{'='*60}")

        print(f"\n  File:    {args.input}")
        print(f"  Driver:  {reader.driver}")
        print(f"  Field:   {reader.field_name}")
        crs = reader.crs_wkt
        print(f"  CRS:     {crs[:60] + '...' if len(crs) > 60 else crs or '(none)'}")
        print(f"  Records: {coverage.record_count:,}")
        print(f"  Sources: {len(coverage.sources):,}")

        if coverage.bounds is None:
            print(f"\n  ⚠ NO RECORDS IN TILE INDEX!")
        else:
            b = coverage.bounds
            print(f"\n  Bounds:")
            print(f"    X: {b[0]:,.3f} → {b[2]:,.3f}")
            print(f"    Y: {b[1]:,.3f} → {b[3]:,.3f}")

    return 0


def _print_records(records: List[IndexRecord]):
    for i, record in enumerate(records):
        b = record.bounds
        print(f"  [{i:3d}] {record.location} → "
              f"X({b[0]:.3f}-{b[2]:.3f}) Y({b[1]:.3f}-{b[3]:.3f})")


def cmd_list(args):
    """List every record."""
    with TileIndexReader(args.input, args.tileindex) as reader:
        records = list(reader.records())

    print(f"\n  {len(records):,} records in {args.input}")
    _print_records(records)
    return 0


def cmd_query(args):
    """List records intersecting a bounding box."""
    with TileIndexReader(args.input, args.tileindex) as reader:
        records = reader.query(tuple(args.bbox))

    min_x, min_y, max_x, max_y = args.bbox
    print(f"\n  View X({min_x}-{max_x}) Y({min_y}-{max_y}): {len(records):,} records")
    _print_records(records)
    return 0


def cmd_coverage(args):
    """Generate coverage map."""
    with TileIndexReader(args.input, args.tileindex) as reader:
        print(f"\n  Generating coverage map...")
        print(f"  Size: {args.size} px")

        coverage_map = CoverageRenderer(reader, labels=args.labels).create_coverage_map(
            size=args.size)

    output = args.output or "coverage.png"
    coverage_map.save(output)
    print(f"  ✓ Saved to: {output} ({coverage_map.width}×{coverage_map.height} px)")
    return 0


def cmd_verify(args):
    """Check that every referenced source layer opens."""
    with TileIndexReader(args.input, args.tileindex) as reader:
        problems = reader.verify()
        total = reader.coverage().record_count

    if not problems:
        print(f"  ✓ All {total:,} referenced layers open")
        return 0

    print(f"  ✗ {len(problems):,} of {total:,} referenced layers are missing")
    for record, reason in problems[:20]:
        print(f"    Missing: {record.location} ({reason})")
    if len(problems) > 20:
        print(f"    ... and {len(problems) - 20} more")
    return 1


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog='vtindex-reader',
        description='Tile Index Reader v1.0',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show index info
  vtindex-reader info index.shp

  # Which sources does a map view need?
  vtindex-reader query index.shp --bbox 500000 6400000 510000 6410000

  # Draw the index rectangles with their file names
  vtindex-reader coverage index.shp -o coverage.png --labels
        """
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    def add_command(name, help_text):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument('input', type=Path, help='Tile index dataset')
        p.add_argument('--tileindex', metavar='FIELD',
                       help=f'Reference field name (default: {DEFAULT_FIELD})')
        return p

    add_command('info', 'Show tile index information')
    add_command('list', 'List all records')

    p_query = add_command('query', 'List records intersecting a bounding box')
    p_query.add_argument('--bbox', type=float, nargs=4, required=True,
                         metavar=('MINX', 'MINY', 'MAXX', 'MAXY'),
                         help='View bounds')

    p_coverage = add_command('coverage', 'Render a coverage map')
    p_coverage.add_argument('--size', type=int, default=1024,
                            help='Longest image side in pixels (default: 1024)')
    p_coverage.add_argument('--labels', action='store_true',
                            help='Draw source file names on rectangles')
    p_coverage.add_argument('-o', '--output', help='Output filename')

    add_command('verify', 'Check that referenced sources open')

    args = parser.parse_args(argv)

    commands = {
        'info': cmd_info,
        'list': cmd_list,
        'query': cmd_query,
        'coverage': cmd_coverage,
        'verify': cmd_verify,
    }

    try:
        return commands[args.command](args)
    except FileNotFoundError as e:
        print(f"\n  ✗ Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"\n  ✗ Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
