import contextlib
import io
import os
import sys

import fiona
from fiona.model import Feature, Geometry, Properties

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tindex_writer import main, rectangle_ring


def write_layer(path, bounds, crs="EPSG:4326", properties=None,
                driver="ESRI Shapefile", layer=None):
    """Write a one-polygon layer covering `bounds`."""
    properties = properties if properties is not None else {'name': 'str:20'}
    schema = {'geometry': 'Polygon', 'properties': properties}
    feature = Feature(
        geometry=Geometry(type='Polygon', coordinates=[rectangle_ring(bounds)]),
        properties=Properties(**{name: None for name in properties}),
    )
    with fiona.open(path, 'w', driver=driver, schema=schema, crs=crs, layer=layer) as dst:
        dst.write(feature)


def run_tool(*argv):
    """Run the writer CLI, returning (exit code, stdout, stderr)."""
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        try:
            code = main(list(argv))
        except SystemExit as e:
            code = e.code
    return code, out.getvalue(), err.getvalue()


def read_index(path, field_name='LOCATION'):
    """Return [(location, bounds)] of an index in file order."""
    with fiona.open(path) as index:
        result = []
        for feature in index:
            ring = feature.geometry.coordinates[0]
            xs = [p[0] for p in ring]
            ys = [p[1] for p in ring]
            result.append((feature.properties[field_name],
                           (min(xs), min(ys), max(xs), max(ys))))
        return result
