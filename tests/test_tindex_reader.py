import contextlib
import glob
import io
import os
import sys
import tempfile
import unittest

from PIL import Image

sys.path.insert(0, os.path.dirname(__file__))

from helpers import run_tool, write_layer
from tindex_reader import TileIndexReader, main


class ReaderTestCase(unittest.TestCase):

    def setUp(self):
        self._cwd = os.getcwd()
        self._tmp = tempfile.TemporaryDirectory()
        os.chdir(self._tmp.name)

        write_layer('a.shp', (0, 0, 10, 10))
        write_layer('b.shp', (5, 5, 15, 15))
        run_tool('out.shp', 'a.shp', 'b.shp')

    def tearDown(self):
        os.chdir(self._cwd)
        self._tmp.cleanup()

    def run_reader(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(list(argv))
        return code, out.getvalue(), err.getvalue()


class TestTileIndexReader(ReaderTestCase):

    def test_records(self):
        with TileIndexReader('out.shp') as reader:
            records = list(reader.records())

        self.assertEqual([r.location for r in records], ['a.shp,0', 'b.shp,0'])
        self.assertEqual(records[1].bounds, (5, 5, 15, 15))

    def test_query_returns_intersecting_records(self):
        with TileIndexReader('out.shp') as reader:
            self.assertEqual([r.location for r in reader.query((11, 11, 12, 12))],
                             ['b.shp,0'])
            self.assertEqual(len(reader.query((6, 6, 7, 7))), 2)
            self.assertEqual(reader.query((-5, -5, -1, -1)), [])

    def test_coverage(self):
        with TileIndexReader('out.shp') as reader:
            coverage = reader.coverage()

        self.assertEqual(coverage.record_count, 2)
        self.assertEqual(coverage.bounds, (0, 0, 15, 15))
        self.assertEqual(coverage.sources, ['a.shp', 'b.shp'])

    def test_verify_reports_missing_sources(self):
        for path in glob.glob('b.*'):
            os.remove(path)

        with TileIndexReader('out.shp') as reader:
            problems = reader.verify()

        self.assertEqual([record.location for record, _ in problems], ['b.shp,0'])

    def test_verify_opens_first_layer_of_geopackage(self):
        write_layer('multi.gpkg', (0, 0, 1, 1), driver='GPKG', layer='roads')
        write_layer('multi.gpkg', (2, 2, 3, 3), driver='GPKG', layer='rivers')
        run_tool('gpkg_index.shp', 'multi.gpkg')

        with TileIndexReader('gpkg_index.shp') as reader:
            self.assertEqual(len(list(reader.records())), 2)
            self.assertEqual(reader.verify(), [])

    def test_unknown_field(self):
        with self.assertRaises(ValueError):
            TileIndexReader('out.shp', field_name='NOPE')

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            TileIndexReader('nothing.shp')


class TestReaderCommands(ReaderTestCase):

    def test_info(self):
        code, out, _ = self.run_reader('info', 'out.shp')
        self.assertEqual(code, 0)
        self.assertIn("Records: 2", out)

    def test_query_command(self):
        code, out, _ = self.run_reader('query', 'out.shp', '--bbox', '11', '11', '12', '12')
        self.assertEqual(code, 0)
        self.assertIn("b.shp,0", out)
        self.assertNotIn("a.shp,0", out)

    def test_coverage_map(self):
        code, _, _ = self.run_reader('coverage', 'out.shp', '-o', 'cov.png',
                                     '--size', '200', '--labels')
        self.assertEqual(code, 0)
        with Image.open('cov.png') as img:
            self.assertEqual(img.size, (200, 200))

    def test_verify_command(self):
        code, out, _ = self.run_reader('verify', 'out.shp')
        self.assertEqual(code, 0)
        self.assertIn("All 2 referenced layers open", out)

    def test_missing_index(self):
        code, _, err = self.run_reader('info', 'nothing.shp')
        self.assertEqual(code, 1)
        self.assertIn("File not found", err)


if __name__ == '__main__':
    unittest.main()
