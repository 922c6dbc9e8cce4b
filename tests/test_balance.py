from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaError

from kantin import crud, models, schemas
from kantin.errors import ConflictError, NotFoundError, ValidationError

STUDENT = 1


def test_topup_increases_balance(seeded):
    txn = crud.topup_balance(seeded, schemas.TopupInput(student_id=STUDENT, amount=Decimal("20000")))
    assert txn.type == "topup"
    assert txn.amount == Decimal("20000.00")
    assert txn.description == "Balance top-up"
    assert crud.get_student(seeded, STUDENT).balance == Decimal("70000.00")


def test_topup_requires_positive_amount():
    with pytest.raises(SchemaError):
        schemas.TopupInput(student_id=STUDENT, amount=0)
    with pytest.raises(SchemaError):
        schemas.TopupInput(student_id=STUDENT, amount=-100)


def test_topup_unknown_student(seeded):
    with pytest.raises(NotFoundError):
        crud.topup_balance(seeded, schemas.TopupInput(student_id=77, amount=Decimal("1000")))


def test_spending_limit_update_and_removal(seeded):
    student = crud.update_spending_limit(seeded, schemas.SpendingLimitUpdate(student_id=STUDENT, spending_limit=Decimal("30000")))
    assert student.spending_limit == Decimal("30000.00")
    student = crud.update_spending_limit(seeded, schemas.SpendingLimitUpdate(student_id=STUDENT, spending_limit=None))
    assert student.spending_limit is None

    with pytest.raises(SchemaError):
        schemas.SpendingLimitUpdate(student_id=STUDENT, spending_limit=0)


def test_ledger_matches_balance_after_activity(seeded):
    crud.topup_balance(seeded, schemas.TopupInput(student_id=STUDENT, amount=Decimal("40000")))
    o = crud.create_order(seeded, schemas.OrderCreate(student_id=STUDENT, items=[{"menu_item_id": 1, "quantity": 1}]))
    crud.create_order(seeded, schemas.OrderCreate(student_id=STUDENT, items=[{"menu_item_id": 4, "quantity": 2}]))
    crud.update_order_status(seeded, schemas.OrderStatusUpdate(id=o.id, status="cancelled"))

    stored = crud.get_student(seeded, STUDENT).balance
    assert stored == Decimal("80000.00")
    assert crud.recompute_balance(seeded, STUDENT) == stored


def test_create_student_and_link_parent(seeded):
    user = crud.create_user(seeded, schemas.UserCreate(
        username="student2", email="student2@example.com", password="secret1",
        role="student", full_name="Dewi Lestari",
    ))
    student = crud.create_student(seeded, schemas.StudentCreate(user_id=user.id, student_id="STD2024002", class_name="11 IPS 2"))
    assert student.balance == Decimal("0.00")
    assert student.spending_limit is None

    link = crud.link_parent_student(seeded, schemas.ParentStudentCreate(parent_id=2, student_id=student.id))
    assert link.parent_id == 2
    assert [c.student_id for c in crud.list_children(seeded, 2)] == ["STD2024001", "STD2024002"]

    with pytest.raises(ConflictError):
        crud.link_parent_student(seeded, schemas.ParentStudentCreate(parent_id=2, student_id=student.id))
    with pytest.raises(ConflictError):
        crud.create_student(seeded, schemas.StudentCreate(user_id=user.id, student_id="STD2024002", class_name="X"))


def test_create_student_opening_balance_is_on_the_ledger(seeded):
    user = crud.create_user(seeded, schemas.UserCreate(
        username="student4", email="student4@example.com", password="secret1",
        role="student", full_name="Agus",
    ))
    student = crud.create_student(seeded, schemas.StudentCreate(
        user_id=user.id, student_id="STD2024004", class_name="10 B", balance=Decimal("10000"),
    ))
    assert student.balance == Decimal("10000.00")
    assert crud.recompute_balance(seeded, student.id) == student.balance

    txns = crud.list_transactions(seeded, student_id=student.id)
    assert [(t.type, t.amount, t.description) for t in txns] == [
        ("topup", Decimal("10000.00"), crud.OPENING_BALANCE_DESCRIPTION),
    ]


def test_create_student_duplicate_leaves_no_opening_row(seeded):
    user = crud.create_user(seeded, schemas.UserCreate(
        username="student5", email="student5@example.com", password="secret1",
        role="student", full_name="Putri",
    ))
    before = seeded.query(models.Transaction).count()
    with pytest.raises(ConflictError):
        crud.create_student(seeded, schemas.StudentCreate(
            user_id=user.id, student_id="STD2024001", class_name="10 C", balance=Decimal("5000"),
        ))
    assert seeded.query(models.Transaction).count() == before


def test_create_student_requires_student_role(seeded):
    with pytest.raises(ValidationError):
        crud.create_student(seeded, schemas.StudentCreate(user_id=2, student_id="STD9", class_name="X"))
    with pytest.raises(ValidationError):
        crud.link_parent_student(seeded, schemas.ParentStudentCreate(parent_id=3, student_id=1))


def test_student_input_validation():
    with pytest.raises(SchemaError):
        schemas.StudentCreate(user_id=1, student_id="S", class_name="C", balance=-1)
    with pytest.raises(SchemaError):
        schemas.StudentCreate(user_id=1, student_id="S", class_name="C", spending_limit=0)


def _backdate(db, txn, when):
    txn.created_at = when
    db.commit()


def test_report_totals(seeded):
    crud.topup_balance(seeded, schemas.TopupInput(student_id=STUDENT, amount=Decimal("10000")))
    o = crud.create_order(seeded, schemas.OrderCreate(student_id=STUDENT, items=[{"menu_item_id": 1, "quantity": 1}]))
    crud.create_order(seeded, schemas.OrderCreate(student_id=STUDENT, items=[{"menu_item_id": 5, "quantity": 1}]))
    crud.update_order_status(seeded, schemas.OrderStatusUpdate(id=o.id, status="cancelled"))

    report = crud.generate_report(seeded, schemas.ReportFilter())
    # seeded opening top-up of 50000 plus one top-up, two purchases, one refund
    assert report["transaction_count"] == 5
    assert report["total_topup"] == Decimal("60000.00")
    assert report["total_purchase"] == Decimal("25000.00")
    assert report["total_refund"] == Decimal("15000.00")
    assert report["net_amount"] == Decimal("50000.00")
    assert report["net_amount"] == crud.recompute_balance(seeded, STUDENT)

    purchases = crud.generate_report(seeded, schemas.ReportFilter(transaction_type="purchase"))
    assert purchases["transaction_count"] == 2
    assert {t.type for t in purchases["transactions"]} == {"purchase"}
    assert purchases["net_amount"] == Decimal("-25000.00")


def test_report_date_range(seeded):
    old = crud.topup_balance(seeded, schemas.TopupInput(student_id=STUDENT, amount=Decimal("5000")))
    _backdate(seeded, old, datetime(2024, 1, 15, 10, 30))
    crud.topup_balance(seeded, schemas.TopupInput(student_id=STUDENT, amount=Decimal("7000")))

    same_day = crud.generate_report(seeded, schemas.ReportFilter(start_date=date(2024, 1, 15), end_date=date(2024, 1, 15)))
    assert same_day["transaction_count"] == 1
    assert same_day["total_topup"] == Decimal("5000.00")

    before = crud.generate_report(seeded, schemas.ReportFilter(end_date=date(2024, 1, 14)))
    assert before["transaction_count"] == 0

    recent = crud.generate_report(seeded, schemas.ReportFilter(start_date=date.today() - timedelta(days=1)))
    assert recent["total_topup"] == Decimal("57000.00")

    exact = crud.generate_report(seeded, schemas.ReportFilter(
        start_date=datetime(2024, 1, 15, 10, 0), end_date=datetime(2024, 1, 15, 10, 30),
    ))
    assert exact["transaction_count"] == 1

    with pytest.raises(ValidationError):
        crud.generate_report(seeded, schemas.ReportFilter(start_date=date(2024, 2, 1), end_date=date(2024, 1, 1)))


def test_report_by_student(seeded):
    user = crud.create_user(seeded, schemas.UserCreate(
        username="student3", email="student3@example.com", password="secret1",
        role="student", full_name="Rina",
    ))
    other = crud.create_student(seeded, schemas.StudentCreate(user_id=user.id, student_id="STD3", class_name="10 A"))
    crud.topup_balance(seeded, schemas.TopupInput(student_id=STUDENT, amount=Decimal("1000")))
    crud.topup_balance(seeded, schemas.TopupInput(student_id=other.id, amount=Decimal("2000")))

    report = crud.generate_report(seeded, schemas.ReportFilter(student_id=other.id))
    assert report["transaction_count"] == 1
    assert report["total_topup"] == Decimal("2000.00")
    assert seeded.query(models.Transaction).count() == 3
