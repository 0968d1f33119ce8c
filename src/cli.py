#!/usr/bin/env python3
"""
FuelEU compliance ledger CLI.

Command-line interface for ledger administration:
- Database initialization and consumption record import
- Snapshot computation, banking, borrowing and resolution
- Pool formation
- Regulatory limits listing

Usage:
    python -m src.cli init-db
    python -m src.cli limits
    python -m src.cli import-records --file consumption.csv
    python -m src.cli snapshot --ship IMO9000001 --year 2025
    python -m src.cli bank --ship IMO9000001 --year 2025 --amount 120.5
    python -m src.cli borrow --ship IMO9000001 --year 2026 --amount 10 --expected-surplus 600
    python -m src.cli repay --ship IMO9000001 --year 2027 --amount 10
    python -m src.cli resolve --ship IMO9000001 --year 2026
    python -m src.cli pool --year 2026 --ship IMO9000001 --ship IMO9000002
"""
import argparse
import csv
import logging
import sys
from pathlib import Path
from typing import List

from src.compliance.errors import ComplianceError, InvalidInputError
from src.compliance.fueleu import get_limits_by_year
from src.compliance.models import ConsumptionRecord
from src.config import get_settings

logger = logging.getLogger(__name__)

RECORD_COLUMNS = ("ship_id", "year", "fuel_type", "quantity_mt")


def _engine(db):
    from src.compliance.engine import ComplianceEngine
    from src.database.repository import SqlAlchemyCompliancePort

    return ComplianceEngine(SqlAlchemyCompliancePort(db), settings=get_settings())


def init_db() -> None:
    """Create all ledger tables."""
    from src.database.session import init_db as create_tables

    create_tables()
    print("\nDatabase initialized.")


def show_limits() -> None:
    """Print the GHG intensity limit schedule."""
    print("\n" + "=" * 40)
    print("FUELEU GHG INTENSITY LIMITS")
    print("=" * 40)
    print(f"{'Year':<8} {'Reduction %':<14} {'Limit gCO2eq/MJ':<16}")
    print("-" * 40)
    for limit in get_limits_by_year():
        print(f"{limit['year']:<8} {limit['reduction_pct']:<14} {limit['ghg_limit']:<16}")
    print("=" * 40 + "\n")


def _optional_float(row, column):
    value = (row.get(column) or "").strip()
    return float(value) if value else None


def read_records_csv(csv_path: Path) -> List[ConsumptionRecord]:
    """
    Parse consumption records from a CSV file.

    Expected columns:
    - ship_id, year, fuel_type, quantity_mt
    - emission_factor, lcv_mj_per_g (optional overrides)
    - is_renewable (optional: true/false, yes/no, 1/0)

    Raises:
        InvalidInputError: missing column or unparseable row
    """
    records = []
    with open(csv_path, "r", newline="") as f:
        reader = csv.DictReader(f)
        missing = [c for c in RECORD_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise InvalidInputError(f"{csv_path}: missing columns {missing}")

        for line, row in enumerate(reader, start=2):
            try:
                records.append(ConsumptionRecord(
                    ship_id=row["ship_id"].strip(),
                    year=int(row["year"]),
                    fuel_type=row["fuel_type"].strip(),
                    quantity_mt=float(row["quantity_mt"]),
                    emission_factor=_optional_float(row, "emission_factor"),
                    lcv_mj_per_g=_optional_float(row, "lcv_mj_per_g"),
                    is_renewable=(row.get("is_renewable") or "").strip().lower()
                    in ("1", "true", "yes"),
                ))
            except ValueError as e:
                raise InvalidInputError(f"{csv_path}, line {line}: {e}") from e

    logger.info(f"Read {len(records)} consumption records from {csv_path}")
    return records


def import_records(csv_path: Path) -> None:
    from src.database.repository import SqlAlchemyCompliancePort
    from src.database.session import get_db_context

    records = read_records_csv(csv_path)
    with get_db_context() as db:
        SqlAlchemyCompliancePort(db).add_consumption_records(records)

    print(f"\nImported {len(records)} consumption records from {csv_path}\n")


def compute_snapshot(ship_id: str, year: int) -> None:
    from src.database.session import get_db_context

    with get_db_context() as db:
        snapshot = _engine(db).compute_snapshot(ship_id, year)

    print(f"\nShip {ship_id} / {year}")
    print(f"  Target intensity: {snapshot.target_intensity:.4f} gCO2eq/MJ")
    print(f"  Actual intensity: {snapshot.actual_intensity:.4f} gCO2eq/MJ")
    print(f"  Raw CB:           {snapshot.raw_cb:+.4f} tCO2eq\n")


def bank_surplus(ship_id: str, year: int, amount: float) -> None:
    from src.database.session import get_db_context

    with get_db_context() as db:
        entry = _engine(db).bank_surplus(ship_id, year, amount)

    print(f"\nBanked {entry.original_amount:.4f} t for {ship_id} ({year}), entry {entry.entry_id}\n")


def borrow(ship_id: str, year: int, amount: float, expected_surplus: float) -> None:
    from src.database.session import get_db_context

    with get_db_context() as db:
        entry = _engine(db).borrow(ship_id, year, amount, expected_surplus)

    print(f"\nBorrowed {entry.original_amount:.4f} t for {ship_id} ({year}), "
          f"repay by {entry.repayment_deadline}, entry {entry.entry_id}\n")


def repay(ship_id: str, year: int, amount: float) -> None:
    from src.database.session import get_db_context

    with get_db_context() as db:
        result = _engine(db).repay_borrowing(ship_id, year, amount)

    print(f"\nRepaid {result.covered:.4f} t from the {year} surplus of {ship_id} "
          f"across {len(result.draws)} advance(s)\n")


def resolve(ship_id: str, year: int) -> None:
    from src.database.session import get_db_context

    with get_db_context() as db:
        balance = _engine(db).resolve_adjusted_balance(ship_id, year)

    print(f"\nShip {ship_id} / {year}")
    print(f"  Raw CB:             {balance.raw_cb:+.4f} t")
    print(f"  Banking adjustment: {balance.banking_adjustment:+.4f} t")
    print(f"  Adjusted CB:        {balance.adjusted_cb:+.4f} t")
    if balance.pool_delta:
        print(f"  Pool transfer:      {balance.pool_delta:+.4f} t")
    print(f"  Verified CB:        {balance.verified_cb:+.4f} t ({balance.status})")
    print(f"  Uncovered gap:      {balance.uncovered_gap:.4f} t")
    print(f"  Banked remaining:   {balance.banked_remaining:.4f} t")
    if balance.penalty_eur:
        print(f"  Penalty exposure:   EUR {balance.penalty_eur:,.2f}")
    for entry in balance.overdue_borrowings:
        print(f"  OVERDUE borrowing from {entry.origin_year}: {entry.remaining_amount:.4f} t "
              f"(deadline {entry.repayment_deadline})")
    print()


def form_pool(year: int, ship_ids) -> None:
    from src.database.session import get_db_context

    with get_db_context() as db:
        result = _engine(db).form_pool(year, ship_ids)

    print("\n" + "=" * 60)
    print(f"POOL {result.pool.pool_id} ({year})")
    print("=" * 60)
    print(f"{'Ship':<20} {'Pre CB':>12} {'Post CB':>12} {'Delta':>12}")
    print("-" * 60)
    for a in result.allocations:
        print(f"{a.ship_id:<20} {a.pre_cb:>12.4f} {a.post_cb:>12.4f} {a.delta:>+12.4f}")
    print("=" * 60)
    print(f"Aggregate: {result.pool.aggregate_adjusted_cb:.4f} t\n")


def main():
    parser = argparse.ArgumentParser(
        description="FuelEU compliance ledger CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create ledger tables")
    subparsers.add_parser("limits", help="Show GHG intensity limits")

    import_parser = subparsers.add_parser("import-records", help="Import consumption records")
    import_parser.add_argument("--file", required=True, type=Path, help="CSV file")

    for name, help_text in (("snapshot", "Compute a ship-year snapshot"),
                            ("resolve", "Resolve a ship-year adjusted CB")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--ship", required=True, help="Ship id")
        sub.add_argument("--year", required=True, type=int, help="Compliance year")

    ledger_parsers = {}
    for name, help_text in (("bank", "Bank surplus"),
                            ("borrow", "Borrow against next year's surplus"),
                            ("repay", "Repay advances from a surplus year")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--ship", required=True, help="Ship id")
        sub.add_argument("--year", required=True, type=int, help="Compliance year")
        sub.add_argument("--amount", required=True, type=float, help="tCO2eq")
        ledger_parsers[name] = sub
    ledger_parsers["borrow"].add_argument(
        "--expected-surplus", required=True, type=float,
        help="Expected next-year surplus (tCO2eq)",
    )

    pool_parser = subparsers.add_parser("pool", help="Form a pool")
    pool_parser.add_argument("--year", required=True, type=int, help="Compliance year")
    pool_parser.add_argument("--ship", required=True, action="append", dest="ships",
                             help="Member ship id (repeat)")

    args = parser.parse_args()
    get_settings().configure_logging()

    try:
        if args.command == "init-db":
            init_db()
        elif args.command == "limits":
            show_limits()
        elif args.command == "import-records":
            import_records(args.file)
        elif args.command == "snapshot":
            compute_snapshot(args.ship, args.year)
        elif args.command == "bank":
            bank_surplus(args.ship, args.year, args.amount)
        elif args.command == "borrow":
            borrow(args.ship, args.year, args.amount, args.expected_surplus)
        elif args.command == "repay":
            repay(args.ship, args.year, args.amount)
        elif args.command == "resolve":
            resolve(args.ship, args.year)
        elif args.command == "pool":
            form_pool(args.year, args.ships)
        else:
            parser.print_help()
            sys.exit(1)
    except ComplianceError as e:
        print(f"\nError ({type(e).__name__}): {e}\n")
        sys.exit(2)


if __name__ == "__main__":
    main()
