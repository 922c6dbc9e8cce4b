import pytest
from sqlalchemy.exc import IntegrityError

from kantin import crud, models


def test_seed_inserts_demo_data(seeded):
    users = crud.list_users(seeded)
    assert [u.username for u in users] == ["student1", "parent1", "manager1", "admin1"]
    assert {u.role for u in users} == {"student", "parent", "canteen_manager", "admin"}

    student = crud.get_student_for_user(seeded, users[0].id)
    assert student.student_id == "STD2024001"
    assert student.class_name == "12 IPA 1"
    assert float(student.balance) == 50000
    assert float(student.spending_limit) == 25000
    assert crud.recompute_balance(seeded, student.id) == student.balance
    opening = crud.list_transactions(seeded, student_id=student.id)
    assert [(t.type, float(t.amount)) for t in opening] == [("topup", 50000)]

    assert [c.id for c in crud.list_children(seeded, users[1].id)] == [student.id]
    assert len(crud.get_all_menu_items(seeded)) == 5


def test_seed_twice_fails_on_unique_constraints(seeded):
    from kantin.seed import seed_data

    with pytest.raises(IntegrityError):
        seed_data(seeded)
    # first run is untouched
    assert seeded.query(models.User).count() == 4
    assert seeded.query(models.MenuItem).count() == 5
    assert seeded.query(models.Transaction).count() == 1
