import csv
import re
from io import StringIO
from typing import Sequence

from models import Transaction, TransactionType

BOM = "\ufeff"

TYPE_LABELS = {
    TransactionType.income: "Income",
    TransactionType.expense: "Expense",
    TransactionType.savings: "Savings",
}


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def export_filename(prefix: str, today) -> str:
    return f"{prefix}-{today.isoformat()}.csv"


def export_transactions(transactions: Sequence[Transaction]) -> str:
    """Semicolon-separated, fully quoted, BOM-prefixed so spreadsheet apps pick UTF-8."""
    output = StringIO()
    writer = csv.writer(output, delimiter=";", quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(
        ["Date", "Type", "Amount", "Category", "Subcategory", "Person", "Note"]
    )
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                TYPE_LABELS.get(txn.type, str(txn.type)),
                f"{float(txn.amount):.2f}",
                txn.category.value if txn.category else "",
                sanitize_csv_value(txn.sub_category or ""),
                txn.person.value,
                sanitize_csv_value(txn.note or ""),
            ]
        )
    return BOM + output.getvalue()
