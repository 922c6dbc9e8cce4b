from locust import HttpUser, task, between
import random

# Run against a database seeded with `python -m kantin.seed`.


class StudentUser(HttpUser):
    wait_time = between(0.1, 0.5)

    def on_start(self):
        r = self.client.post("/auth/login", json={"username": "student1", "password": "password123"})
        if r.status_code == 200:
            self.headers = {"Authorization": f"Bearer {r.json()['token']}"}
            self.student_id = 1
        else:
            self.headers = None

    @task(5)
    def browse_menu(self):
        self.client.get("/menu")

    @task(1)
    def place_order(self):
        if not self.headers:
            return
        items = self.client.get("/menu").json()
        if not items:
            return
        cheapest = min(items, key=lambda i: i["price"])
        self.client.post(
            "/orders",
            json={"student_id": self.student_id, "items": [{"menu_item_id": cheapest["id"], "quantity": 1}]},
            headers=self.headers,
        )

    @task(2)
    def list_orders(self):
        if self.headers:
            self.client.get("/orders", headers=self.headers)


class ParentUser(HttpUser):
    wait_time = between(0.5, 1.5)

    def on_start(self):
        r = self.client.post("/auth/login", json={"username": "parent1", "password": "password123"})
        self.headers = {"Authorization": f"Bearer {r.json()['token']}"} if r.status_code == 200 else None

    @task
    def top_up(self):
        if not self.headers:
            return
        amount = random.choice([5000, 10000, 20000])
        self.client.post("/balance/topup", json={"student_id": 1, "amount": amount}, headers=self.headers)
