"""
Convert tabulated material data from ASCII to binary NumPy side-car files.

TableData.load(path, use_cache=True) picks up ``<file>.npy`` next to the text
file when it is newer; creating the caches up front keeps worker processes
from each parsing the same text tables.
"""

import sys
import time
from pathlib import Path

import numpy as np

# Add parent directory to path to import beamline_mc
sys.path.insert(0, str(Path(__file__).parent.parent))

from beamline_mc.core.errors import ParseError
from beamline_mc.physics.table import TableData


def convert_tables(data_dir='examples/data', pattern='*.dat'):
    """Parse every table under ``data_dir`` and write its .npy cache."""
    data_path = Path(data_dir)
    if not data_path.is_absolute():
        data_path = Path(__file__).parent.parent / data_path

    if not data_path.exists():
        print(f"Error: {data_path} does not exist")
        return 1

    table_files = sorted(data_path.glob(pattern))
    if not table_files:
        print(f"No {pattern} files found in {data_path}")
        return 1

    print(f"Found {len(table_files)} table files")
    print(f"Converting ASCII → binary NumPy format...\n")

    total_time_ascii = 0.0
    total_time_binary = 0.0
    failures = 0

    for table_file in table_files:
        print(f"Processing: {table_file.name}")

        start = time.time()
        try:
            table = TableData.load(table_file, use_cache=False)
        except ParseError as e:
            print(f"  ✗ {e}\n")
            failures += 1
            continue
        time_ascii = time.time() - start
        total_time_ascii += time_ascii
        print(f"  ASCII load: {time_ascii*1000:.1f}ms ({table.n_rows} rows, {table.n_columns} cols)")

        npy_file = table_file.with_suffix(table_file.suffix + '.npy')
        np.save(npy_file, table.data)

        start = time.time()
        cached = TableData.load(table_file, use_cache=True)
        time_binary = time.time() - start
        total_time_binary += time_binary
        print(f"  Binary load: {time_binary*1000:.1f}ms")

        if not np.array_equal(table.data, cached.data):
            print(f"  ✗ Data mismatch in {npy_file.name}\n")
            failures += 1
            continue
        print(f"  ✓ Saved: {npy_file.name}\n")

    print("=" * 60)
    print("SUMMARY")
    print("=" * 60)
    print(f"Files converted: {len(table_files) - failures} / {len(table_files)}")
    print(f"Total ASCII load time: {total_time_ascii*1000:.1f}ms")
    print(f"Total binary load time: {total_time_binary*1000:.1f}ms")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(convert_tables(*sys.argv[1:2]))
