"""Role dashboards for the HTML UI.

Each dashboard reads the shared `DashboardState` (user, token, active view)
and changes only `active_view`, through `set_active_view`. Everything else a
view shows is loaded from `crud` when it is rendered.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from . import crud, schemas
from .models import ORDER_STATUSES
from .config import get_settings

LOW_STOCK_THRESHOLD = 10
OPEN_STATUSES = ("pending", "confirmed", "preparing", "ready")


@dataclass
class DashboardState:
    user: schemas.UserRead
    token: str
    active_view: str


class Dashboard:
    role: str = ""
    title: str = ""
    # (view key, label)
    tabs: Tuple[Tuple[str, str], ...] = ()

    @property
    def default_view(self) -> str:
        return self.tabs[0][0]

    def views(self) -> Tuple[str, ...]:
        return tuple(key for key, _ in self.tabs)

    def resolve_view(self, view: Optional[str]) -> str:
        return view if view in self.views() else self.default_view

    def set_active_view(self, state: DashboardState, view: Optional[str]) -> DashboardState:
        state.active_view = self.resolve_view(view)
        return state

    def load_view(self, db: Session, state: DashboardState) -> Dict:
        loader = getattr(self, f"view_{state.active_view}")
        return loader(db, state)

    def context(self, db: Session, state: DashboardState) -> Dict:
        self.set_active_view(state, state.active_view)
        ctx = {
            "dashboard": self,
            "state": state,
            "user": state.user,
            "active_view": state.active_view,
        }
        ctx.update(self.load_view(db, state))
        return ctx


class StudentDashboard(Dashboard):
    role = "student"
    title = "Student Dashboard"
    tabs = (("menu", "Menu & Order"), ("orders", "My Orders"), ("history", "History"), ("profile", "Profile"))

    def _student(self, db, state):
        return crud.get_student_for_user(db, state.user.id)

    def view_menu(self, db, state):
        return {"student": self._student(db, state), "menu_items": crud.get_menu_items(db)}

    def view_orders(self, db, state):
        student = self._student(db, state)
        orders = crud.list_orders(db, student_id=student.id) if student else []
        return {
            "student": student,
            "orders": [o for o in orders if o.status in OPEN_STATUSES],
        }

    def view_history(self, db, state):
        student = self._student(db, state)
        if not student:
            return {"student": None, "orders": [], "transactions": []}
        orders = crud.list_orders(db, student_id=student.id)
        return {
            "student": student,
            "orders": [o for o in orders if o.status not in OPEN_STATUSES],
            "transactions": crud.list_transactions(db, student_id=student.id),
        }

    def view_profile(self, db, state):
        return {"student": self._student(db, state)}


class ParentDashboard(Dashboard):
    role = "parent"
    title = "Parent Dashboard"
    tabs = (("children", "My Children"), ("topup", "Top Up"), ("reports", "Reports"), ("settings", "Settings"))

    def view_children(self, db, state):
        return {"children": crud.list_children(db, state.user.id)}

    def view_topup(self, db, state):
        return {"children": crud.list_children(db, state.user.id)}

    def view_reports(self, db, state):
        children = crud.list_children(db, state.user.id)
        reports = [
            (child, crud.generate_report(db, schemas.ReportFilter(student_id=child.id)))
            for child in children
        ]
        return {"children": children, "reports": reports}

    def view_settings(self, db, state):
        return {"children": crud.list_children(db, state.user.id)}


class CanteenManagerDashboard(Dashboard):
    role = "canteen_manager"
    title = "Canteen Manager Dashboard"
    tabs = (("orders", "Orders"), ("menu", "Menu"), ("inventory", "Inventory"), ("reports", "Reports"))

    def view_orders(self, db, state):
        orders = [o for o in crud.list_orders(db) if o.status in OPEN_STATUSES]
        return {"orders": orders, "statuses": ORDER_STATUSES}

    def view_menu(self, db, state):
        return {"menu_items": crud.get_all_menu_items(db)}

    def view_inventory(self, db, state):
        items = crud.get_all_menu_items(db)
        return {
            "menu_items": items,
            "low_stock": [i for i in items if i.stock_quantity <= LOW_STOCK_THRESHOLD],
            "low_stock_threshold": LOW_STOCK_THRESHOLD,
        }

    def view_reports(self, db, state):
        return {"report": crud.generate_report(db, schemas.ReportFilter(transaction_type="purchase"))}


class AdminDashboard(Dashboard):
    role = "admin"
    title = "Admin Dashboard"
    tabs = (
        ("overview", "Overview"),
        ("users", "Users"),
        ("transactions", "Transactions"),
        ("reports", "Reports"),
        ("settings", "Settings"),
    )

    def view_overview(self, db, state):
        students = crud.list_students(db)
        orders = crud.list_orders(db)
        return {
            "user_count": len(crud.list_users(db)),
            "student_count": len(students),
            "order_count": len(orders),
            "open_order_count": len([o for o in orders if o.status in OPEN_STATUSES]),
            "total_balance": sum((s.balance for s in students), 0),
        }

    def view_users(self, db, state):
        return {"users": crud.list_users(db)}

    def view_transactions(self, db, state):
        return {"transactions": crud.list_transactions(db)}

    def view_reports(self, db, state):
        return {"report": crud.generate_report(db, schemas.ReportFilter())}

    def view_settings(self, db, state):
        settings = get_settings()
        return {"token_exp_seconds": settings.token_exp_seconds, "log_level": settings.log_level}


DASHBOARDS: Dict[str, Dashboard] = {
    d.role: d for d in (StudentDashboard(), ParentDashboard(), CanteenManagerDashboard(), AdminDashboard())
}


def dashboard_for(role: str) -> Dashboard:
    return DASHBOARDS[role]


def default_view_for(role: str) -> str:
    return dashboard_for(role).default_view
