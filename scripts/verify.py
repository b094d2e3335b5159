"""
Route Sheet Verification Script

Verifies data integrity of the Excel route sheet written by the worker.
Run from project root: python scripts/verify.py
"""

import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd

from dispatch.services.route_sheets import RouteSheetManager


def verify_route_sheet() -> bool:
    """Verify the route sheet after a simulation run."""
    manager = RouteSheetManager()

    print("=" * 60)
    print("🔍 ROUTE SHEET VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {manager.file_path}")
    print("=" * 60)

    if not manager.file_path.exists():
        print("\n❌ Route sheet not found!")
        print("   Create some routes and make sure the Celery worker is running.")
        return False

    df = pd.read_excel(manager.file_path, engine='openpyxl')
    print(f"\n✅ File loaded successfully!")

    print(f"\n📊 STATISTICS:")
    print(f"   Rows: {len(df)}")
    print(f"   Routes: {df['assignment_id'].nunique()}")

    missing = [col for col in RouteSheetManager.COLUMNS if col not in df.columns]
    if missing:
        print(f"\n⚠️ Missing Columns: {missing}")
    else:
        print(f"\n✅ All required columns present")

    duplicates = df.duplicated(subset=['assignment_id', 'stop_sequence']).sum()
    if duplicates > 0:
        print(f"\n⚠️ {duplicates} duplicate stops found!")
    else:
        print(f"✅ No duplicate stops")

    first_stops = df[df['stop_sequence'] == 0]
    bad_origins = first_stops[first_stops['stop_label'] != 'Branch']
    if len(bad_origins) > 0 or len(first_stops) != df['assignment_id'].nunique():
        print(f"\n⚠️ Some routes do not start at the branch")
    else:
        print(f"✅ Every route starts at the branch")

    orders = df['order_id'].dropna()
    repeated = orders[orders.duplicated()]
    if len(repeated) > 0:
        print(f"\n⚠️ Orders on more than one route: {sorted(repeated.unique().tolist())}")
    else:
        print(f"✅ No order appears on two routes")

    print(f"\n📋 LATEST STOPS:")
    print("-" * 60)
    cols = ['assignment_id', 'stop_label', 'order_id', 'address']
    print(df[cols].tail(8).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE")
    print("=" * 60)

    return True


if __name__ == "__main__":
    verify_route_sheet()
