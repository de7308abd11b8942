#!/usr/bin/env python3
"""Dataset generation script for pupil import tests.

Generates a synthetic pupil file (.xlsx sheet "Daten" or ';' CSV with BOM)
using the column keys of the sample config (S_ID, S_Name, ... P_TEL).
A share of the rows gets typical defects so validation, pattern analysis and
bulk correction have something to find:

- phone numbers in national format (079 123 45 67)
- AHV numbers without dots
- dates as Excel serial numbers
- names in capitals
- missing required names
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd

FIRST_NAMES = ["Max", "Anna", "Lea", "Noah", "Mia", "Luca", "Emma", "Elias", "Lina", "Nico"]
LAST_NAMES = ["Muster", "Meier", "Keller", "Müller", "Weber", "Schmid", "Huber", "Brunner", "Gerber", "Frei"]
DEFECTS = ("phone", "ahv", "date", "caps", "missing")


def _ahv(rng: np.random.Generator) -> str:
    digits = "".join(str(d) for d in rng.integers(0, 10, 10))
    return f"756.{digits[0:4]}.{digits[4:8]}.{digits[8:10]}"


def _phone(rng: np.random.Generator) -> str:
    d = "".join(str(x) for x in rng.integers(0, 10, 7))
    return f"+41 79 {d[0:3]} {d[3:5]} {d[5:7]}"


def generate_pupils(rows: int, error_rate: float = 0.1, seed: int = 42) -> pd.DataFrame:
    """Generate pupil rows; about `error_rate` of them carry one defect.

    Args:
        rows: Number of data rows
        error_rate: Share of rows with a defect (0..1)
        seed: Random seed for reproducible data

    Returns:
        DataFrame with string cells only
    """
    rng = np.random.default_rng(seed)
    start = pd.Timestamp("2010-01-01")
    birthdays = start + pd.to_timedelta(rng.integers(0, 3650, rows), unit="D")

    records = []
    for i in range(rows):
        record = {
            "S_ID": str(1000 + i),
            "S_AHV": _ahv(rng),
            "S_Name": str(rng.choice(LAST_NAMES)),
            "S_Vorname": str(rng.choice(FIRST_NAMES)),
            "S_Geburtsdatum": birthdays[i].strftime("%d.%m.%Y"),
            "P_TEL": _phone(rng),
        }
        if rng.random() < error_rate:
            defect = DEFECTS[int(rng.integers(0, len(DEFECTS)))]
            if defect == "phone":
                record["P_TEL"] = "0" + record["P_TEL"][4:]
            elif defect == "ahv":
                record["S_AHV"] = record["S_AHV"].replace(".", "")
            elif defect == "date":
                serial = (birthdays[i] - pd.Timestamp("1899-12-30")).days
                record["S_Geburtsdatum"] = str(serial)
            elif defect == "caps":
                record["S_Name"] = record["S_Name"].upper()
            else:
                record["S_Name"] = ""
        records.append(record)
    return pd.DataFrame(records, dtype=str)


def write_dataset(output_path: Path, frame: pd.DataFrame) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if output_path.suffix.lower() == ".csv":
        frame.to_csv(output_path, sep=";", index=False, encoding="utf-8-sig")
    else:
        frame.to_excel(output_path, sheet_name="Daten", index=False, engine="openpyxl")
    print(f"Created file: {output_path}")
    print(f"  Rows: {len(frame):,}")
    print(f"  Columns: {len(frame.columns)}")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate a synthetic pupil dataset with typical defects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s data/schueler.xlsx
  %(prog)s data/schueler.csv --rows 20000 --error-rate 0.3 --seed 7
        """,
    )
    parser.add_argument("output", type=Path, help="Output .xlsx or .csv path")
    parser.add_argument("--rows", type=int, default=5_000, help="Number of data rows (default: 5,000)")
    parser.add_argument("--error-rate", type=float, default=0.1, help="Share of defective rows (default: 0.1)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    args = parser.parse_args()

    if args.rows <= 0:
        print("Error: --rows must be positive", file=sys.stderr)
        return 1
    if not 0 <= args.error_rate <= 1:
        print("Error: --error-rate must be between 0 and 1", file=sys.stderr)
        return 1
    if args.output.suffix.lower() not in (".xlsx", ".csv"):
        print("Error: output must end with .xlsx or .csv", file=sys.stderr)
        return 1

    try:
        write_dataset(args.output, generate_pupils(args.rows, args.error_rate, args.seed))
        return 0
    except OSError as e:
        print(f"\nError generating dataset: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
