"""
Integration tests for POST /checkout, POST /portal and GET /subscription.
"""
import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
import stripe
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from examprep.main import app
from examprep.core import config
from examprep.core.auth_dependency import get_db
from examprep.db.base import Base
from examprep.db.models import User
from examprep.services import billing_service
from examprep.services.plans import PRODUCT_NAME
from examprep.services.stripe_catalog import CatalogProvisioner, catalog


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

JWT_SECRET = "test-jwt-secret"
EXISTING_PRICES = {"data": [
    {"id": "price_m", "recurring": {"interval": "month"}, "unit_amount": 3900, "active": True, "currency": "brl"},
    {"id": "price_a", "recurring": {"interval": "year"}, "unit_amount": 22800, "active": True, "currency": "brl"},
]}


def override_get_db():
    """Override get_db dependency for testing."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_token(user_id: str, secret: str = JWT_SECRET, expires_in: timedelta = timedelta(minutes=60)) -> str:
    """Mint a token the way the identity provider does."""
    return jwt.encode(
        {"sub": user_id, "exp": datetime.utcnow() + expires_in},
        secret,
        algorithm="HS256",
    )


def auth_headers(user_id="user-1"):
    return {"Authorization": f"Bearer {create_token(user_id)}"}


@pytest.fixture(scope="function", autouse=True)
def setup_db():
    """Create and drop tables for each test."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(autouse=True)
def configured(monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(config, "JWT_SECRET", JWT_SECRET)
    monkeypatch.setattr(config, "JWT_AUDIENCE", None)
    monkeypatch.setattr(config, "BILLING_CURRENCY", "brl")
    catalog.reset()
    yield
    catalog.reset()


@pytest.fixture
def db_session():
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def test_user(db_session):
    """User who has never checked out."""
    user = User(id="user-1", email="ana@example.com", full_name="Ana Souza")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def customer_user(db_session):
    """User with an existing customer link and an active plan."""
    user = User(
        id="user-2",
        email="bruno@example.com",
        subscription_tier="annual",
        subscription_status="active",
        stripe_customer_id="cus_existing",
        stripe_subscription_id="sub_2",
        subscription_current_period_end=datetime(2027, 1, 1),
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def client():
    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def stripe_catalog():
    """Stripe account that already holds the product and both prices."""
    with patch("stripe.Product.list", return_value={"data": [{"id": "prod_1", "name": PRODUCT_NAME}]}), \
         patch("stripe.Price.list", return_value=EXISTING_PRICES):
        yield


def test_checkout_requires_authentication(client, test_user):
    response = client.post("/checkout", json={"planId": "monthly"})
    assert response.status_code == 401


def test_checkout_rejects_invalid_token(client, test_user):
    token = create_token("user-1", secret="someone-else")
    response = client.post("/checkout", json={"planId": "monthly"}, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_checkout_rejects_expired_token(client, test_user):
    token = create_token("user-1", expires_in=timedelta(minutes=-5))
    response = client.post("/checkout", json={"planId": "monthly"}, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.parametrize("body", [{"planId": "weekly"}, {"planId": "free"}, {}])
def test_checkout_rejects_invalid_plan(client, test_user, body):
    with patch("stripe.Product.list") as list_products:
        response = client.post("/checkout", json=body, headers=auth_headers())
    
    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid plan"}
    list_products.assert_not_called()


def test_checkout_not_configured(client, test_user, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", None)
    response = client.post("/checkout", json={"planId": "monthly"}, headers=auth_headers())
    assert response.status_code == 503


def test_checkout_creates_and_persists_customer_before_session(client, db_session, test_user, stripe_catalog):
    """Test a first checkout links a new customer before the session is opened."""
    seen_links = []
    
    def create_session(**kwargs):
        check = TestSessionLocal()
        try:
            seen_links.append(check.query(User).filter(User.id == "user-1").one().stripe_customer_id)
        finally:
            check.close()
        return {"id": "cs_1", "url": "https://checkout.stripe.com/c/pay/cs_1"}
    
    with patch("stripe.Customer.create", return_value={"id": "cus_new"}) as create_customer, \
         patch("stripe.checkout.Session.create", side_effect=create_session) as create_checkout:
        response = client.post(
            "/checkout",
            json={"planId": "annual"},
            headers={**auth_headers(), "Origin": "https://app.concurseia.com.br"},
        )
    
    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.stripe.com/c/pay/cs_1"}
    assert seen_links == ["cus_new"]
    assert create_customer.call_args.kwargs["email"] == "ana@example.com"
    assert create_customer.call_args.kwargs["metadata"] == {"user_id": "user-1"}
    
    kwargs = create_checkout.call_args.kwargs
    assert kwargs["customer"] == "cus_new"
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_a", "quantity": 1}]
    assert kwargs["metadata"] == {"user_id": "user-1", "plan_id": "annual"}
    assert kwargs["success_url"] == "https://app.concurseia.com.br/subscription?success=true"
    assert kwargs["cancel_url"] == "https://app.concurseia.com.br/subscription?canceled=true"


def test_checkout_reuses_existing_customer(client, customer_user, stripe_catalog):
    with patch("stripe.Customer.create") as create_customer, \
         patch("stripe.checkout.Session.create", return_value={"id": "cs_2", "url": "https://checkout.stripe.com/x"}) as create_checkout:
        response = client.post("/checkout", json={"planId": "monthly"}, headers=auth_headers("user-2"))
    
    assert response.status_code == 200
    create_customer.assert_not_called()
    assert create_checkout.call_args.kwargs["customer"] == "cus_existing"
    assert create_checkout.call_args.kwargs["line_items"] == [{"price": "price_m", "quantity": 1}]
    assert create_checkout.call_args.kwargs["success_url"].startswith(config.APP_URL)


def test_checkout_provisioning_failure(client, db_session, test_user):
    with patch("stripe.Product.list", side_effect=stripe.AuthenticationError("Invalid API Key provided: sk_test_***")), \
         patch("stripe.Customer.create") as create_customer:
        response = client.post("/checkout", json={"planId": "monthly"}, headers=auth_headers())
    
    assert response.status_code == 500
    assert "API Key" not in response.text
    create_customer.assert_not_called()
    db_session.expire_all()
    assert db_session.query(User).filter(User.id == "user-1").one().stripe_customer_id is None


def test_checkout_session_failure(client, customer_user, stripe_catalog):
    with patch("stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("connection reset")):
        response = client.post("/checkout", json={"planId": "monthly"}, headers=auth_headers("user-2"))
    
    assert response.status_code == 500
    assert response.json() == {"detail": "Could not create checkout session"}


def test_concurrent_first_checkouts_both_succeed():
    """Two first-time checkouts racing on an empty catalog both get a session."""
    provisioner = CatalogProvisioner()
    barrier = threading.Barrier(2)
    users = [
        User(id="u-1", email="a@example.com", stripe_customer_id="cus_a"),
        User(id="u-2", email="b@example.com", stripe_customer_id="cus_b"),
    ]
    urls, errors = [], []
    
    def worker(user, plan_id):
        barrier.wait()
        try:
            urls.append(billing_service.create_checkout_session(
                MagicMock(), user, plan_id, catalog=provisioner,
            ))
        except Exception as e:  # collected for the assertion below
            errors.append(e)
    
    with patch("stripe.Product.list", return_value={"data": []}), \
         patch("stripe.Product.create", return_value={"id": "prod_1"}) as create_product, \
         patch("stripe.Price.list", return_value={"data": []}), \
         patch("stripe.Price.create", side_effect=[{"id": "price_m"}, {"id": "price_a"}]), \
         patch("stripe.checkout.Session.create", return_value={"id": "cs", "url": "https://checkout.stripe.com/x"}):
        threads = [
            threading.Thread(target=worker, args=(users[0], "monthly")),
            threading.Thread(target=worker, args=(users[1], "annual")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
    
    assert errors == []
    assert len(urls) == 2
    assert create_product.call_count == 1


def test_portal_without_customer(client, test_user):
    response = client.post("/portal", headers=auth_headers())
    assert response.status_code == 404


def test_portal_with_customer(client, customer_user):
    with patch("stripe.billing_portal.Session.create", return_value={"id": "bps_1", "url": "https://billing.stripe.com/p/1"}) as create_portal:
        response = client.post("/portal", headers=auth_headers("user-2"))
    
    assert response.status_code == 200
    assert response.json() == {"url": "https://billing.stripe.com/p/1"}
    assert create_portal.call_args.kwargs["customer"] == "cus_existing"
    assert create_portal.call_args.kwargs["return_url"] == f"{config.APP_URL}/subscription"


def test_portal_stripe_failure(client, customer_user):
    with patch("stripe.billing_portal.Session.create", side_effect=stripe.APIConnectionError("down")):
        response = client.post("/portal", headers=auth_headers("user-2"))
    assert response.status_code == 500


def test_get_subscription(client, customer_user):
    response = client.get("/subscription", headers=auth_headers("user-2"))
    
    assert response.status_code == 200
    data = response.json()
    assert data["tier"] == "annual"
    assert data["status"] == "active"
    assert data["currentPeriodEnd"].startswith("2027-01-01")
    assert data["hasCustomer"] is True
    assert [plan["id"] for plan in data["plans"]] == ["free", "monthly", "annual"]
    assert data["plans"][0]["examLimit"] == 1
    assert data["plans"][1]["price"] == 3900


def test_get_subscription_unknown_user(client):
    response = client.get("/subscription", headers=auth_headers("ghost"))
    assert response.status_code == 404


def test_checkout_for_user_without_local_profile(client):
    """A valid token whose user has no local record gets the documented 404, before any Stripe call."""
    with patch("stripe.Customer.create") as create_customer, \
         patch("stripe.checkout.Session.create") as create_session:
        response = client.post("/checkout", json={"planId": "monthly"}, headers=auth_headers("ghost"))
    
    assert response.status_code == 404
    assert response.json() == {"detail": "User not found"}
    create_customer.assert_not_called()
    create_session.assert_not_called()
    
    documented = app.openapi()["paths"]["/checkout"]["post"]["responses"]
    assert "404" in documented
