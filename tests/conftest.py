import pytest

from backend.app import create_app
from fakes import FakeSession, MemoryProductRepository

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "hamikdash2024"


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def product_repository():
    return MemoryProductRepository()


@pytest.fixture
def make_app(fake_session, product_repository, tmp_path):
    def factory(**overrides):
        config = {
            "TESTING": True,
            "APP_ENV": "testing",
            "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
            "ADMIN_USERNAME": ADMIN_USERNAME,
            "ADMIN_PASSWORD": ADMIN_PASSWORD,
            "ADMIN_PASSWORD_HASH": "",
            "BCRYPT_LOG_ROUNDS": 4,
            "ADMIN_EMAIL": "orders@example.com",
            "RESEND_ORDER_NOTIFICATION_API_KEY": "",
            "GREENINVOICE_API_KEY_ID": None,
            "GREENINVOICE_API_KEY_SECRET": None,
            "GREENINVOICE_BASE_URL": "https://greeninvoice.test/api/v1",
            "GREENINVOICE_TEST_MODE": False,
            "CARDCOM_TERMINAL_NUMBER": "1000",
            "CARDCOM_API_NAME": "test-api",
            "CARDCOM_API_PASSWORD": "s3cret-pass",
            "CARDCOM_BASE_URL": "https://cardcom.test",
            "CARDCOM_PLUGIN_ID": None,
            "FRONTEND_URL": "https://shop.example.com",
            "BACKEND_URL": "https://api.example.com",
            "PRODUCT_IMAGE_BASE_URL": "",
            "FRONTEND_BUILD_DIR": str(tmp_path / "build"),
            "IMAGES_DIR": str(tmp_path / "images"),
        }
        config.update(overrides)
        return create_app(
            config, product_repository=product_repository, http_session=fake_session
        )

    return factory


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers(client):
    response = client.post(
        "/api/admin/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.get_json()['token']}"}
