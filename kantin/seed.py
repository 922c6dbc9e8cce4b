"""
Demo data for an empty database.

Inserts four demo users (one per role), one student with a parent link
and an opening top-up, and five menu items. Not idempotent: running it
twice fails on the unique usernames/emails.

Usage:
  python -m kantin.seed [--db sqlite:///./kantin.db]
"""
import argparse
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import crud, models
from .auth import hash_password
from .config import get_settings
from .db import Base, SessionLocal, engine, make_engine

logger = logging.getLogger(__name__)

DEMO_USERS = [
    {"username": "student1", "email": "student1@school.edu", "role": "student",
     "full_name": "Sari Indah", "phone": "081234567890"},
    {"username": "parent1", "email": "parent1@email.com", "role": "parent",
     "full_name": "Budi Santoso", "phone": "081234567891"},
    {"username": "manager1", "email": "manager1@school.edu", "role": "canteen_manager",
     "full_name": "Chef Maria", "phone": "081234567892"},
    {"username": "admin1", "email": "admin1@school.edu", "role": "admin",
     "full_name": "Dr. Ahmad", "phone": "081234567893"},
]

DEMO_MENU = [
    {"name": "Nasi Gudeg", "description": "Traditional Javanese dish with gudeg, chicken, and rice",
     "price": 15000, "category": "main_course", "stock_quantity": 25},
    {"name": "Nasi Rendang", "description": "Spicy beef rendang with steamed rice",
     "price": 18000, "category": "main_course", "stock_quantity": 20},
    {"name": "Keripik Singkong", "description": "Crispy cassava chips with spicy seasoning",
     "price": 8000, "category": "snack", "stock_quantity": 50},
    {"name": "Es Teh Manis", "description": "Sweet iced tea, refreshing and traditional",
     "price": 5000, "category": "beverage", "stock_quantity": 100},
    {"name": "Es Cendol", "description": "Traditional Indonesian dessert with coconut milk",
     "price": 10000, "category": "dessert", "stock_quantity": 30},
]


def seed_data(db: Session) -> None:
    password_hash = hash_password(get_settings().demo_password)
    try:
        users = {}
        for spec in DEMO_USERS:
            user = models.User(password_hash=password_hash, **spec)
            db.add(user)
            users[spec["username"]] = user
        db.flush()

        student = models.Student(
            user_id=users["student1"].id,
            student_id="STD2024001",
            class_name="12 IPA 1",
            balance=0,
            spending_limit=25000,
        )
        db.add(student)
        db.flush()
        crud.open_balance(db, student, 50000)
        db.add(models.ParentStudent(parent_id=users["parent1"].id, student_id=student.id))

        for spec in DEMO_MENU:
            db.add(models.MenuItem(is_available=True, **spec))
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.exception("failed to seed data")
        raise
    logger.info("demo data seeded successfully")


def main():
    parser = argparse.ArgumentParser(description="Seed an empty database with demo data")
    parser.add_argument("--db", default=None, help="SQLAlchemy database URL (default: DATABASE_URL)")
    args = parser.parse_args()
    logging.basicConfig(level=get_settings().log_level)

    bind = engine
    session_factory = SessionLocal
    if args.db:
        bind = make_engine(args.db)
        session_factory = sessionmaker(autocommit=False, autoflush=False, bind=bind, future=True)
    Base.metadata.create_all(bind=bind)
    with session_factory() as db:
        seed_data(db)


if __name__ == "__main__":
    main()
