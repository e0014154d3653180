#!/usr/bin/env python3
"""
Vector Tile Index Writer v1.0
=============================

Builds a MapServer compatible tile index for a set of vector datasets.
Each selected layer becomes one polygon record holding the layer's extent
and a "<path>,<layer-index>" reference string.

Usage:
    python tindex_writer.py output_dataset src_dataset... [options]

Options:
    -lnum n                     Add layer number n from each source (repeatable)
    -lname name                 Add the layer named name from each source (repeatable)
    -f format                   Output driver name (default: ESRI Shapefile)
    -tileindex field            Reference field name (default: LOCATION)
    -write_absolute_path        Write source paths as absolute paths
    -skip_different_projection  Leave out layers whose projection differs
    -accept_different_schemas   Index layers even if their attributes differ
    --verbose                   Show detailed progress
"""

import argparse
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

import fiona
from dotenv import load_dotenv
from fiona.crs import CRS
from fiona.errors import CRSError
from fiona.model import Feature, Geometry, Properties
from tqdm import tqdm

__version__ = "1.0.0"

load_dotenv()


# ============================================================================
# Constants
# ============================================================================

DEFAULT_FORMAT = os.getenv("TINDEX_FORMAT", "ESRI Shapefile")
DEFAULT_FIELD = os.getenv("TINDEX_FIELD", "LOCATION")
DEFAULT_FIELD_WIDTH = 200
INDEX_LAYER_NAME = "tileindex"

SCHEMA_HINT = (
    "Note : you can override this behaviour with -accept_different_schemas option\n"
    "but this may result in a tileindex incompatible with MapServer"
)
PROJECTION_HINT = (
    "Note : you can leave such layers out with -skip_different_projection option"
)
PROJECTION_SKIP_HINT = (
    "Note : such layers are left out because -skip_different_projection was given"
)


class TileIndexError(Exception):
    """Fatal error while building the tile index."""


# ============================================================================
# Data Structures
# ============================================================================

Bounds = Tuple[float, float, float, float]


@dataclass(frozen=True)
class FieldDef:
    """One attribute field of a layer schema."""
    name: str
    type: str
    width: int = 0
    precision: int = 0

    @classmethod
    def from_schema(cls, name: str, spec: str) -> 'FieldDef':
        """Parse a Fiona property spec such as 'str:80' or 'float:24.15'."""
        type_name, _, size = spec.partition(':')
        width, _, precision = size.partition('.')
        return cls(
            name=name,
            type=type_name,
            width=int(width) if width else 0,
            precision=int(precision) if precision else 0,
        )

    def matches(self, other: 'FieldDef') -> bool:
        return (self.type == other.type
                and self.width == other.width
                and self.precision == other.precision
                and self.name.lower() == other.name.lower())


@dataclass
class IndexRecord:
    """A tile index entry: source reference plus layer extent."""
    location: str
    bounds: Bounds

    @property
    def geometry(self) -> Geometry:
        return Geometry(type='Polygon', coordinates=[rectangle_ring(self.bounds)])


@dataclass
class TileIndexOptions:
    """Command line options for one build."""
    output: str
    sources: List[str]
    driver: str = DEFAULT_FORMAT
    field_name: str = DEFAULT_FIELD
    layer_numbers: List[int] = field(default_factory=list)
    layer_names: List[str] = field(default_factory=list)
    write_absolute_path: bool = False
    skip_different_projection: bool = False
    accept_different_schemas: bool = False

    @property
    def layers_wildcarded(self) -> bool:
        return not self.layer_numbers and not self.layer_names


@dataclass
class BuildSummary:
    """Counters reported at the end of a run."""
    existing: int = 0
    datasets: int = 0
    added: int = 0
    skipped: int = 0


# ============================================================================
# Progress Indicator
# ============================================================================

class ProgressReporter:
    """Handles progress reporting for different phases."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def phase(self, name: str):
        if self.verbose:
            print(f"\n{'='*60}")
            print(f"  {name}")
            print(f"{'='*60}")

    def info(self, message: str):
        print(f"  ℹ {message}")

    def success(self, message: str):
        print(f"  ✓ {message}")

    def warning(self, message: str):
        tqdm.write(f"  ⚠ {message}", file=sys.stderr)

    def error(self, message: str):
        tqdm.write(f"  ✗ {message}", file=sys.stderr)

    def hint(self, message: str):
        tqdm.write(message, file=sys.stderr)

    def detail(self, message: str):
        if self.verbose:
            print(f"    {message}")

    def stats(self, label: str, value):
        print(f"  {label:.<40} {value}")

    def progress_bar(self, items: Iterable, description: str) -> Iterable:
        return tqdm(items, desc=f"  {description}", unit="dataset",
                    disable=not self.verbose, file=sys.stderr)


# ============================================================================
# Geometry and Reference Helpers
# ============================================================================

def rectangle_ring(bounds: Bounds) -> List[Tuple[float, float]]:
    """Closed ring around an extent: min/min, min/max, max/max, max/min, min/min."""
    min_x, min_y, max_x, max_y = bounds
    return [
        (min_x, min_y),
        (min_x, max_y),
        (max_x, max_y),
        (max_x, min_y),
        (min_x, min_y),
    ]


def format_location(path: str, layer_index: int) -> str:
    return f"{path},{layer_index}"


def parse_location(location: str) -> Tuple[str, int]:
    """Split a reference string on its last comma into (path, layer index)."""
    path, sep, layer = location.rpartition(',')
    if not sep:
        raise ValueError(f"No layer number in tile index entry: {location!r}")
    try:
        return path, int(layer.strip())
    except ValueError:
        raise ValueError(f"Invalid layer number in tile index entry: {location!r}")


def open_layer(path: str, layer_index: int, names: Optional[List[str]] = None):
    """Open layer number `layer_index` of a dataset by its listed name."""
    if names is None:
        names = fiona.listlayers(path)
    if not 0 <= layer_index < len(names):
        raise ValueError(f"{path} has no layer {layer_index}")
    return fiona.open(path, layer=names[layer_index])


def resolve_driver(name: str) -> Optional[str]:
    """Canonical driver name, matched case-insensitively."""
    for driver in fiona.supported_drivers:
        if driver.lower() == name.lower():
            return driver
    return None


def layer_schema(collection) -> List[FieldDef]:
    """Ordered field definitions of an open Fiona collection."""
    return [FieldDef.from_schema(name, spec)
            for name, spec in collection.schema['properties'].items()]


def same_crs(wkt_a: str, wkt_b: str) -> bool:
    """True when both are unset or both describe the same spatial reference."""
    if not wkt_a or not wkt_b:
        return bool(wkt_a) == bool(wkt_b)
    try:
        return CRS.from_wkt(wkt_a) == CRS.from_wkt(wkt_b)
    except CRSError:
        return wkt_a == wkt_b


def find_field(schema: Dict, name: str) -> Optional[str]:
    """Case-insensitive lookup of a field name in a Fiona schema."""
    for candidate in schema['properties']:
        if candidate.lower() == name.lower():
            return candidate
    return None


# ============================================================================
# Tile Index Builder
# ============================================================================

class TileIndexBuilder:
    """Appends one extent record per requested source layer to a tile index."""

    def __init__(self, options: TileIndexOptions, progress: Optional[ProgressReporter] = None):
        self.options = options
        self.progress = progress or ProgressReporter()
        self.summary = BuildSummary()

        self.existing: Set[str] = set()
        # None: not established yet; '' : established as "no spatial reference"
        self.crs_wkt: Optional[str] = None
        self.schema: Optional[List[FieldDef]] = None

        self.layer_name: Optional[str] = None
        self.field_name: str = options.field_name
        self._first_schema_warning = True
        self._first_projection_warning = True

    # ------------------------------------------------------------------
    # Layer selection and references
    # ------------------------------------------------------------------

    def is_requested(self, layer_index: int, layer_name: str) -> bool:
        if self.options.layers_wildcarded:
            return True
        if layer_index in self.options.layer_numbers:
            return True
        return any(name.lower() == layer_name.lower()
                   for name in self.options.layer_names)

    def location_for(self, path: str, layer_index: int) -> str:
        if (self.options.write_absolute_path
                and not os.path.isabs(path)
                and os.path.exists(path)):
            path = os.path.join(os.getcwd(), path)
        return format_location(path, layer_index)

    # ------------------------------------------------------------------
    # Output dataset
    # ------------------------------------------------------------------

    def open_output(self):
        """Find the index layer, creating the output dataset if needed."""
        output = self.options.output
        try:
            layers = fiona.listlayers(output)
        except Exception:
            self.progress.detail(f"{output} is not an existing dataset, creating it")
            self.create_output()
            try:
                layers = fiona.listlayers(output)
            except Exception as e:
                raise TileIndexError(f"Failed to reopen {output} after creating it: {e}")

        if not layers:
            raise TileIndexError("Can't find any layer in output tileindex!")
        self.layer_name = layers[0]

        with fiona.open(output, layer=self.layer_name) as index:
            field_name = find_field(index.schema, self.options.field_name)
        if field_name is None:
            raise TileIndexError(
                f"Can't find {self.options.field_name} field in tile index dataset.")
        self.field_name = field_name

    def create_output(self):
        driver = resolve_driver(self.options.driver)
        if driver is None:
            available = "\n".join(f"  -> `{name}'" for name in sorted(fiona.supported_drivers))
            raise TileIndexError(
                f"Unable to find driver `{self.options.driver}'.\n"
                f"The following drivers are available:\n{available}")
        if 'w' not in fiona.supported_drivers[driver]:
            raise TileIndexError(f"{driver} driver does not support data source creation.")

        seed_wkt = self._seed_crs()
        schema = {
            'geometry': 'Polygon',
            'properties': {self.options.field_name: f'str:{self.field_width()}'},
        }
        try:
            with fiona.open(self.options.output, 'w', driver=driver, schema=schema,
                            crs=seed_wkt or None, layer=INDEX_LAYER_NAME):
                pass
        except Exception as e:
            raise TileIndexError(
                f"{driver} driver failed to create {self.options.output}: {e}")
        self.progress.success(f"Created {self.options.output} ({driver})")

    def field_width(self) -> int:
        value = os.getenv("TINDEX_FIELD_WIDTH")
        if not value:
            return DEFAULT_FIELD_WIDTH
        try:
            width = int(value)
        except ValueError:
            width = 0
        if width <= 0:
            self.progress.warning(
                f"Invalid TINDEX_FIELD_WIDTH {value!r}, using {DEFAULT_FIELD_WIDTH}")
            return DEFAULT_FIELD_WIDTH
        return width

    def _seed_crs(self) -> str:
        """Spatial reference of the first requested layer of the first source."""
        if not self.options.sources:
            return ''
        path = self.options.sources[0]
        try:
            names = fiona.listlayers(path)
            for layer_index, name in enumerate(names):
                if not self.is_requested(layer_index, name):
                    continue
                with open_layer(path, layer_index, names) as src:
                    return src.crs_wkt or ''
        except Exception as e:
            self.progress.detail(f"Could not read spatial reference of {path}: {e}")
        return ''

    # ------------------------------------------------------------------
    # Existing records
    # ------------------------------------------------------------------

    def load_existing(self):
        """Cache existing references and recover snapshots from the first one."""
        first = None
        with fiona.open(self.options.output, layer=self.layer_name) as index:
            for feature in index:
                value = feature.properties.get(self.field_name)
                location = '' if value is None else str(value)
                if first is None:
                    first = location
                self.existing.add(location.lower())

        self.summary.existing = len(self.existing)
        self.progress.detail(f"Found {self.summary.existing:,} existing records")
        if first:
            self._recover_reference(first)

    def _recover_reference(self, location: str):
        try:
            path, layer_index = parse_location(location)
        except ValueError as e:
            self.progress.detail(str(e))
            return
        try:
            with open_layer(path, layer_index) as src:
                self.crs_wkt = src.crs_wkt or ''
                if self.schema is None:
                    self.schema = layer_schema(src)
        except Exception as e:
            self.progress.detail(f"Could not reopen {path} layer {layer_index}: {e}")

    # ------------------------------------------------------------------
    # Consistency checks
    # ------------------------------------------------------------------

    def check_projection(self, src, layer_index: int, path: str) -> bool:
        """Return False when the layer must be skipped for its projection."""
        layer_wkt = src.crs_wkt or ''
        if self.crs_wkt is None:
            self.crs_wkt = layer_wkt
            return True
        if same_crs(self.crs_wkt, layer_wkt):
            return True

        skip = self.options.skip_different_projection
        self.progress.warning(
            f"Warning : layer {layer_index} of {path} is not using the same "
            f"projection system as other files in the tileindex. This may cause "
            f"problems when using it in MapServer for example."
            f"{' Skipping it' if skip else ''}")
        if self._first_projection_warning:
            self.progress.hint(PROJECTION_SKIP_HINT if skip else PROJECTION_HINT)
            self._first_projection_warning = False
        return not skip

    def check_schema(self, src, path: str) -> bool:
        """Return False when the layer must be skipped for its attributes."""
        current = layer_schema(src)
        if self.schema is None:
            self.schema = current
            return True
        if self.options.accept_different_schemas:
            return True

        if len(current) != len(self.schema):
            message = (f"Number of attributes of layer {src.name} of {path} "
                       f"does not match ... skipping it.")
        elif not all(a.matches(b) for a, b in zip(self.schema, current)):
            message = (f"Schema of attributes of layer {src.name} of {path} "
                       f"does not match. Skipping it.")
        else:
            return True

        self.progress.warning(message)
        if self._first_schema_warning:
            self.progress.hint(SCHEMA_HINT)
            self._first_schema_warning = False
        return False

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def add_dataset(self, path: str, index) -> int:
        """Index every requested layer of one source. Returns records added."""
        try:
            names = fiona.listlayers(path)
        except Exception:
            self.progress.warning(f"Failed to open dataset {path}, skipping.")
            self.summary.skipped += 1
            return 0

        self.summary.datasets += 1
        added = 0
        for layer_index, name in enumerate(names):
            if not self.is_requested(layer_index, name):
                continue
            record = self._index_layer(path, layer_index, names)
            if record is None:
                self.summary.skipped += 1
                continue
            self.append(index, record)
            added += 1
        return added

    def _index_layer(self, path: str, layer_index: int,
                     names: List[str]) -> Optional[IndexRecord]:
        location = self.location_for(path, layer_index)
        if location.lower() in self.existing:
            self.progress.warning(
                f"Layer {layer_index} of {path} is already in tileindex. Skipping it.")
            return None

        try:
            with open_layer(path, layer_index, names) as src:
                if not self.check_projection(src, layer_index, path):
                    return None
                if not self.check_schema(src, path):
                    return None
                layer_name = src.name
                try:
                    bounds = tuple(src.bounds)
                except Exception:
                    self.progress.warning(
                        f"GetExtent() failed on layer {layer_name} of {path}, skipping.")
                    return None
        except Exception as e:
            self.progress.warning(f"Failed to open layer {layer_index} of {path} ({e}), skipping.")
            return None

        self.progress.detail(
            f"{location}: X({bounds[0]:.3f} → {bounds[2]:.3f}) Y({bounds[1]:.3f} → {bounds[3]:.3f})")
        return IndexRecord(location=location, bounds=bounds)

    def append(self, index, record: IndexRecord):
        feature = Feature(
            geometry=record.geometry,
            properties=Properties(**{self.field_name: record.location}),
        )
        try:
            index.write(feature)
        except Exception as e:
            raise TileIndexError(
                f"Failed to create feature on tile index. Terminating. ({e})")
        self.existing.add(record.location.lower())
        self.summary.added += 1

    def run(self) -> BuildSummary:
        """Open the output, load existing records and index every source."""
        self.progress.phase("Opening Tile Index")
        self.open_output()
        self.load_existing()

        self.progress.phase("Indexing Sources")
        self.progress.info(
            f"Indexing {len(self.options.sources):,} source datasets into "
            f"{self.options.output} (layer {self.layer_name})")
        with fiona.open(self.options.output, 'a', layer=self.layer_name) as index:
            for path in self.progress.progress_bar(self.options.sources, "Indexing"):
                self.add_dataset(path, index)

        return self.summary


# ============================================================================
# Main Entry Point
# ============================================================================

class UsageParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> UsageParser:
    parser = UsageParser(
        prog='vtindex',
        description='Build a MapServer compatible tile index of vector datasets',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        epilog="""
If no -lnum or -lname arguments are given it is assumed that all layers
in source datasets should be added to the tile index as independent records.
The value of -lnum must be an integer layer number.

Examples:
  # Index every layer of two shapefiles
  vtindex index.shp a.shp b.shp

  # Index layer "roads" of each GeoPackage into a GeoPackage index
  vtindex -f GPKG -lname roads index.gpkg *.gpkg
        """
    )

    parser.add_argument('output', help='Output tile index dataset')
    parser.add_argument('sources', nargs='+', help='Source datasets')
    parser.add_argument('-lnum', dest='layer_numbers', type=int, action='append',
                        default=[], metavar='n',
                        help="Add layer number 'n' from each source file")
    parser.add_argument('-lname', dest='layer_names', action='append',
                        default=[], metavar='name',
                        help="Add the layer named 'name' from each source file")
    parser.add_argument('-f', dest='driver', default=DEFAULT_FORMAT, metavar='format',
                        help=f'Output format name (default: {DEFAULT_FORMAT})')
    parser.add_argument('-tileindex', dest='field_name', default=DEFAULT_FIELD,
                        metavar='field',
                        help=f'Field holding the dataset name (default: {DEFAULT_FIELD})')
    parser.add_argument('-write_absolute_path', action='store_true',
                        help='Filenames are written with absolute paths')
    parser.add_argument('-skip_different_projection', action='store_true',
                        help='Only layers with the same projection as the tile index are inserted')
    parser.add_argument('-accept_different_schemas', action='store_true',
                        help='Do not check that all layers have the same attribute schema')
    parser.add_argument('--utility_version', '--version', action='version',
                        version=(f'%(prog)s {__version__} is running against '
                                 f'GDAL {fiona.__gdal_version__} (Fiona {fiona.__version__})'))
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Show detailed output')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)

    options = TileIndexOptions(
        output=args.output,
        sources=args.sources,
        driver=args.driver,
        field_name=args.field_name,
        layer_numbers=args.layer_numbers,
        layer_names=args.layer_names,
        write_absolute_path=args.write_absolute_path,
        skip_different_projection=args.skip_different_projection,
        accept_different_schemas=args.accept_different_schemas,
    )
    progress = ProgressReporter(verbose=args.verbose)

    try:
        summary = TileIndexBuilder(options, progress).run()
    except TileIndexError as e:
        progress.error(str(e))
        return 1

    progress.stats("Existing records", f"{summary.existing:,}")
    progress.stats("Datasets opened", f"{summary.datasets:,}")
    progress.stats("Layers added", f"{summary.added:,}")
    progress.stats("Layers skipped", f"{summary.skipped:,}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
