from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from csv_utils import (
    ImportShape,
    detect_shape,
    parse_amount,
    parse_date,
    parse_import_file,
)
from database import Base
from models import TransactionType
from schemas import CategoryIn
from services import (
    CategoryService,
    CategoryTypeMismatch,
    ImportCategoryAmbiguous,
    NotFoundError,
)
from validators import sanitize_description, validate_import_row

TODAY = date(2025, 6, 1)

BANK_CSV = (
    "Filter,Date,Description,Sub-description,Type of Transaction,Amount,Balance\n"
    "All,05/01/2025,CARD PAYMENT,Coffee Shop,Debit,-4.50,100.00\n"
    ",,,,,,\n"
    "All,06/01/2025,TRANSFER,,Credit,1000.00,1100.00\n"
)


def _no_categories(ref, kind):
    raise AssertionError("category lookup not expected")


def test_parse_amount_handles_bank_formats() -> None:
    assert parse_amount("R$ 1.234,56") == Decimal("1234.56")
    assert parse_amount("1,234.56") == Decimal("1234.56")
    assert parse_amount("€ 12") == Decimal("12")
    assert parse_amount("1,234") == Decimal("1234")
    assert parse_amount("1,234,567") == Decimal("1234567")
    assert parse_amount("R$ 2,500") == Decimal("2500")
    assert parse_amount("12,5") == Decimal("12.5")
    assert parse_amount("1.234.567,89") == Decimal("1234567.89")
    assert parse_amount("1.234.567") == Decimal("1234567")
    assert parse_amount("12.34") == Decimal("12.34")
    assert parse_amount(7) == Decimal("7")
    assert parse_amount("(12.00)", allow_negative=True) == Decimal("-12.00")
    assert parse_amount("12.50-", allow_negative=True) == Decimal("-12.50")
    with pytest.raises(ValueError, match="positive"):
        parse_amount("-5")
    with pytest.raises(ValueError):
        parse_amount("twelve")
    with pytest.raises(ValueError):
        parse_amount(True)


def test_thousands_separated_amounts_keep_their_value() -> None:
    row = validate_import_row(
        {"description": "Bonus", "amount": "1,234", "kind": "income", "date": "2025-01-05"},
        resolve_category=_no_categories,
        today=TODAY,
    )
    assert row.amount_minor == 123400


def test_oversized_csv_field_is_a_parse_error() -> None:
    content = ('description,amount,kind,date\n"' + "x" * 200_000 + '",1,needs,2025-01-05\n')
    with pytest.raises(ValueError, match="Failed to parse file"):
        parse_import_file(content.encode("utf-8"), ImportShape.tabular)


def test_parse_date_accepts_supported_formats() -> None:
    assert parse_date("2025-01-05") == date(2025, 1, 5)
    assert parse_date("05.01.2025") == date(2025, 1, 5)
    assert parse_date("05/01/2025") == date(2025, 1, 5)
    assert parse_date("2025-01-05T10:30:00Z") == date(2025, 1, 5)
    with pytest.raises(ValueError):
        parse_date("2025-13-01")


def test_detect_shape() -> None:
    assert detect_shape("ledger.CSV", None) == ImportShape.tabular
    assert detect_shape("upload", "application/json") == ImportShape.structured
    with pytest.raises(ValueError):
        detect_shape("notes.txt", "text/plain")


def test_bank_export_rows_are_mapped() -> None:
    rows = parse_import_file(BANK_CSV.encode("utf-8"), ImportShape.tabular)

    assert len(rows) == 2
    debit, credit = rows
    assert debit["description"] == "Coffee Shop"
    assert debit["amount"] == Decimal("4.50")
    assert debit["kind"] == "needs"
    assert debit["raw_data"]["sub_description"] == "Coffee Shop"
    assert debit["raw_data"]["balance"] == "100.00"
    assert credit["description"] == "TRANSFER"
    assert credit["kind"] == "income"

    row = validate_import_row(debit, resolve_category=_no_categories, today=TODAY)
    assert row.amount_minor == 450
    assert row.date == date(2025, 1, 5)
    assert row.type == TransactionType.needs
    assert row.raw_data["type_of_transaction"] == "debit"


def test_bank_direction_falls_back_to_sign() -> None:
    content = (
        "date,amount,type of transaction,description\n"
        "2025-01-05,25.00,,Refund\n"
        "2025-01-06,-3.00,,Fee\n"
    ).encode("utf-8")
    refund, fee = parse_import_file(content, ImportShape.tabular)
    assert refund["kind"] == "income"
    assert fee["kind"] == "needs"
    assert fee["amount"] == Decimal("3.00")


def test_generic_csv_skips_blank_rows_and_accepts_aliases() -> None:
    content = (
        "\ufeffDescription,Amount,Type,Date,Category\n"
        "Lunch,12.30,wants,2025-01-05,\n"
        "\n"
        "  ,  ,  ,  ,  \n"
    ).encode("utf-8")
    rows = parse_import_file(content, ImportShape.tabular)
    assert rows == [
        {
            "description": "Lunch",
            "amount": "12.30",
            "type": "wants",
            "date": "2025-01-05",
            "category": "",
        }
    ]
    row = validate_import_row(rows[0], resolve_category=_no_categories, today=TODAY)
    assert row.type == TransactionType.wants
    assert row.amount_minor == 1230
    assert row.category_id is None
    assert row.raw_data == rows[0]


def test_structured_file_must_be_a_list() -> None:
    rows = parse_import_file(
        b'[{"description": "Rent", "amount": 500, "kind": "needs", "date": "2025-01-05"}]',
        ImportShape.structured,
    )
    assert rows[0]["amount"] == 500
    with pytest.raises(ValueError, match="array"):
        parse_import_file(b'{"description": "Rent"}', ImportShape.structured)
    with pytest.raises(ValueError):
        parse_import_file(b"[not json", ImportShape.structured)
    with pytest.raises(ValueError, match="empty"):
        parse_import_file(b"  \n", ImportShape.tabular)


def test_row_contract_failures() -> None:
    base = {"description": "Rent", "amount": "500", "kind": "needs", "date": "2025-01-05"}

    with pytest.raises(ValueError, match="Missing required fields"):
        validate_import_row(
            {"description": "Rent", "amount": "1"},
            resolve_category=_no_categories,
            today=TODAY,
        )
    with pytest.raises(ValueError, match="Invalid transaction type"):
        validate_import_row(
            {**base, "kind": "expense"}, resolve_category=_no_categories, today=TODAY
        )
    with pytest.raises(ValueError, match="positive"):
        validate_import_row(
            {**base, "amount": "-1"}, resolve_category=_no_categories, today=TODAY
        )
    with pytest.raises(ValueError, match="maximum"):
        validate_import_row(
            {**base, "amount": "1000000000001"},
            resolve_category=_no_categories,
            today=TODAY,
        )
    with pytest.raises(ValueError, match="future"):
        validate_import_row(
            {**base, "date": "2035-06-02"}, resolve_category=_no_categories, today=TODAY
        )
    with pytest.raises(ValueError, match="Description"):
        validate_import_row(
            {**base, "description": "<>"}, resolve_category=_no_categories, today=TODAY
        )
    with pytest.raises(ValueError, match="Invalid row format"):
        validate_import_row(["Rent"], resolve_category=_no_categories, today=TODAY)

    ok = validate_import_row(
        {**base, "date": "2035-06-01"}, resolve_category=_no_categories, today=TODAY
    )
    assert ok.date == date(2035, 6, 1)


def test_description_is_sanitized() -> None:
    assert sanitize_description("<Lunch>\t at  work ") == "Lunch at work"
    assert len(sanitize_description("x" * 300)) == 200


def test_row_category_reference_is_passed_to_resolver() -> None:
    seen = []

    def resolve(ref, kind):
        seen.append((ref, kind))
        return 7

    row = validate_import_row(
        {
            "description": "Groceries",
            "amount": "20",
            "kind": "needs",
            "date": "2025-01-05",
            "categoryId": "7",
        },
        resolve_category=resolve,
        today=TODAY,
    )
    assert row.category_id == 7
    assert seen == [(7, TransactionType.needs)]


def test_category_matcher_by_id_and_name() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.needs))
        categories.create(CategoryIn(name="Gas", type=TransactionType.needs))
        categories.create(CategoryIn(name="Gap", type=TransactionType.needs))
        salary = categories.create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )
        matcher = categories.matcher()

        assert matcher.resolve(food.id, TransactionType.needs) == food.id
        assert matcher.resolve("food", TransactionType.needs) == food.id
        assert matcher.resolve("Fod", TransactionType.needs) == food.id
        with pytest.raises(ImportCategoryAmbiguous):
            matcher.resolve("Gab", TransactionType.needs)
        with pytest.raises(CategoryTypeMismatch):
            matcher.resolve(salary.id, TransactionType.needs)
        with pytest.raises(NotFoundError):
            matcher.resolve("Salary", TransactionType.needs)
        with pytest.raises(NotFoundError):
            matcher.resolve(9999, TransactionType.needs)
