from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

EXPENSE_TYPES = ("fixed", "variable")
STATUS_PENDING = "pending"
STATUS_PAID = "paid"


@dataclass(slots=True)
class RecurringTemplate:
    id: int | None
    owner_id: str
    description: str
    category: str | None
    amount: Decimal
    expense_type: str = "fixed"
    recurring_day: int | None = 1
    recurring_start_date: date | None = None
    recurring_end_date: date | None = None


@dataclass(slots=True)
class ExpenseInstance:
    id: int | None
    owner_id: str
    description: str
    category: str | None
    amount: Decimal
    expense_type: str
    due_date: date
    status: str = STATUS_PENDING
    parent_template_id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_template(cls, template: RecurringTemplate, due_date: date) -> "ExpenseInstance":
        return cls(
            id=None,
            owner_id=template.owner_id,
            description=template.description,
            category=template.category,
            amount=template.amount,
            expense_type=template.expense_type,
            due_date=due_date,
            status=STATUS_PENDING,
            parent_template_id=template.id,
        )


def _parse_date(value) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def template_from_row(row) -> RecurringTemplate:
    return RecurringTemplate(
        id=row["id"],
        owner_id=row["owner_id"],
        description=row["description"],
        category=row["category"],
        amount=Decimal(row["amount"]),
        expense_type=row["expense_type"],
        recurring_day=row["recurring_day"],
        recurring_start_date=_parse_date(row["recurring_start_date"]),
        recurring_end_date=_parse_date(row["recurring_end_date"]),
    )


def instance_from_row(row) -> ExpenseInstance:
    created = row["created_at"]
    return ExpenseInstance(
        id=row["id"],
        owner_id=row["owner_id"],
        description=row["description"],
        category=row["category"],
        amount=Decimal(row["amount"]),
        expense_type=row["expense_type"],
        due_date=_parse_date(row["due_date"]),
        status=row["status"],
        parent_template_id=row["parent_template_id"],
        created_at=datetime.fromisoformat(created) if isinstance(created, str) else created,
    )
