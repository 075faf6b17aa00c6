#!/usr/bin/env python3
"""Test script to verify all imports work correctly"""

print("Testing imports from main.py...")

try:
    # Test standard imports
    import pandas as pd
    import numpy as np
    import matplotlib.pyplot as plt
    from scipy import stats
    from pathlib import Path
    print("✓ Standard imports work")

    # Test main.py imports
    from main import (
        # Value parsers
        parse_time,
        parse_number,
        forward_fill,

        # Table locator and series normalizer
        build_mapping,
        locate_table,
        normalize_series,

        # Analysis functions
        compute_ror,
        detect_events,
        build_phases,
        LabelLayoutEngine,

        # File I/O and plotting
        read_table_text,
        parse_csv_text,
        export_samples_csv,
        plot_roast_curve,

        # Main pipeline
        prepare_series,
        analyze_roast_file
    )
    print("✓ All main.py imports work")

    # Test basic functionality
    data_folder = Path("data")
    if data_folder.exists():
        roast_files = sorted(data_folder.glob("*.csv")) + sorted(data_folder.glob("*.zip"))
        print(f"✓ Found {len(roast_files)} roast log files")

        if roast_files:
            # Test single file preparation
            sample_file = roast_files[0]
            prepared = prepare_series(parse_csv_text(read_table_text(sample_file)))
            print(f"✓ Successfully prepared {sample_file.name}")
            print(f"  - Duration: {prepared['phases']['total'] / 60:.1f} minutes")
            print(f"  - Phases: {prepared['phases']['display']}")
    else:
        print("⚠ Data folder not found")

    print("\n✅ All tests passed! The script should work correctly.")

except Exception as e:
    print(f"❌ Error: {e}")
    import traceback
    traceback.print_exc()
