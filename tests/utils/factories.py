"""Test data factories using Faker."""

from faker import Faker
from typing import Optional

from src.services.supabase_client import generate_id

fake = Faker()


def create_profile_id() -> str:
    return generate_id()


def create_task_data(
    customer_id: Optional[str] = None,
    tasker_id: Optional[str] = None,
    status: str = "open",
    budget: Optional[float] = 500.0,
    final_price: Optional[float] = None,
    **overrides,
) -> dict:
    """Create test task row."""
    data = {
        "id": generate_id(),
        "title": fake.sentence(nb_words=4).rstrip("."),
        "description": fake.text(max_nb_chars=120),
        "budget": budget,
        "final_price": final_price,
        "status": status,
        "customer_id": customer_id or create_profile_id(),
        "tasker_id": tasker_id,
        "payment_status": "unpaid",
        "created_at": fake.iso8601(),
    }
    data.update(overrides)
    return data


def create_application_data(task_id: str, tasker_id: Optional[str] = None, status: str = "pending", **overrides) -> dict:
    """Create test task application row."""
    data = {
        "id": generate_id(),
        "task_id": task_id,
        "tasker_id": tasker_id or create_profile_id(),
        "proposed_price": float(fake.random_int(min=100, max=2000)),
        "message": fake.sentence(),
        "status": status,
        "created_at": fake.iso8601(),
    }
    data.update(overrides)
    return data


def create_direct_booking_data(status: str = "pending", **overrides) -> dict:
    """Create test legacy direct booking row."""
    data = {
        "id": generate_id(),
        "customer_id": create_profile_id(),
        "technician_id": create_profile_id(),
        "service_name": fake.job(),
        "total_amount": float(fake.random_int(min=100, max=5000)),
        "status": status,
        "created_at": fake.iso8601(),
    }
    data.update(overrides)
    return data


def create_wallet_data(user_id: str, balance: float = 0.0) -> dict:
    """Create test wallet row."""
    return {
        "id": generate_id(),
        "user_id": user_id,
        "balance": balance,
        "currency": "ETB",
        "is_active": True,
    }


def create_obligation_data(task: dict, status: str = "pending", amount: Optional[float] = None, **overrides) -> dict:
    """Create test task payment row for a task."""
    data = {
        "id": generate_id(),
        "user_id": task["customer_id"],
        "payee_id": task["tasker_id"],
        "task_id": task["id"],
        "type": "task_payment",
        "amount": amount if amount is not None else (task.get("final_price") or task.get("budget")),
        "currency": "ETB",
        "status": status,
        "metadata": {"amount_source": "budget"},
    }
    data.update(overrides)
    return data


def create_customer_info() -> dict:
    """Create payer details as forwarded to the gateway."""
    return {
        "email": fake.email(),
        "first_name": fake.first_name(),
        "last_name": fake.last_name(),
        "phone": "0911 234 567",
    }


def create_bank_details() -> dict:
    return {
        "bank_name": "Commercial Bank of Ethiopia",
        "account_number": fake.numerify("1000########"),
        "account_holder": fake.name(),
    }


def create_mobile_money_details() -> dict:
    return {"provider": "telebirr", "phone_number": "0911234567"}
