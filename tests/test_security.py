"""
Security and input validation tests.

Covers:
1. Webhook HMAC signatures
2. Admin tokens and the internal API key
3. Strict validation of booking input
4. Settings validation
"""

import os
import sys
from datetime import date, timedelta

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from booking_orchestrator.config import Settings
from booking_orchestrator.schemas.booking import BookingCreate, MaintenanceBlock
from booking_orchestrator.utils.security import (
    compute_hmac_sha256,
    create_access_token,
    decode_token,
    verify_access_token,
    verify_hmac_signature,
    verify_internal_api_key,
)


class TestHmacSignature:
    BODY = b'{"event_type":"form.completed"}'

    def test_valid_signature(self):
        signature = "sha256=" + compute_hmac_sha256("secret", self.BODY)
        assert verify_hmac_signature("secret", self.BODY, signature) is True

    def test_tampered_body(self):
        signature = "sha256=" + compute_hmac_sha256("secret", self.BODY)
        assert verify_hmac_signature("secret", self.BODY + b" ", signature) is False

    def test_wrong_secret(self):
        signature = "sha256=" + compute_hmac_sha256("other", self.BODY)
        assert verify_hmac_signature("secret", self.BODY, signature) is False

    def test_missing_prefix(self):
        signature = compute_hmac_sha256("secret", self.BODY)
        assert verify_hmac_signature("secret", self.BODY, signature) is False

    def test_empty_inputs(self):
        assert verify_hmac_signature("", self.BODY, "sha256=abc") is False
        assert verify_hmac_signature("secret", self.BODY, "") is False


class TestTokens:
    def test_access_token_round_trip(self):
        token = create_access_token({"sub": "admin-1", "role": "admin"})

        payload = verify_access_token(token)

        assert payload["sub"] == "admin-1"
        assert payload["type"] == "access"

    def test_expired_token_rejected(self):
        token = create_access_token({"sub": "admin-1"}, expires_delta=timedelta(seconds=-5))
        assert verify_access_token(token) is None

    def test_garbage_token(self):
        assert decode_token("not-a-jwt") is None

    def test_non_access_token_rejected(self):
        from jose import jwt
        from booking_orchestrator.config import settings

        token = jwt.encode({"sub": "admin-1", "type": "refresh"}, settings.secret_key, algorithm=settings.algorithm)

        assert verify_access_token(token) is None

    def test_internal_api_key(self, monkeypatch):
        from booking_orchestrator.config import settings

        assert verify_internal_api_key(settings.internal_api_key) is True
        assert verify_internal_api_key("wrong") is False

        monkeypatch.setattr(settings, "internal_api_key", "")
        assert verify_internal_api_key("") is False


class TestBookingInputValidation:
    def _data(self, **overrides):
        data = {
            "car_id": "car-1",
            "start_date": date(2030, 5, 1),
            "end_date": date(2030, 5, 4),
            "customer_email": "renter@example.com",
            "total_price": "100.00",
        }
        data.update(overrides)
        return data

    def test_valid(self):
        booking = BookingCreate(**self._data(customer_email="  Renter@Example.COM "))
        assert booking.customer_email == "renter@example.com"
        assert booking.currency == "USD"

    @pytest.mark.parametrize("email", ["", "renter", "renter@", "@example.com", "a b@example.com"])
    def test_invalid_email(self, email):
        with pytest.raises(ValidationError):
            BookingCreate(**self._data(customer_email=email))

    @pytest.mark.parametrize("price", ["0", "-10"])
    def test_non_positive_price(self, price):
        with pytest.raises(ValidationError):
            BookingCreate(**self._data(total_price=price))

    def test_end_before_start(self):
        with pytest.raises(ValidationError):
            BookingCreate(**self._data(end_date=date(2030, 4, 30)))

    def test_same_day_rejected(self):
        with pytest.raises(ValidationError):
            BookingCreate(**self._data(end_date=date(2030, 5, 1)))

    def test_empty_car_id(self):
        with pytest.raises(ValidationError):
            BookingCreate(**self._data(car_id=""))

    def test_currency_length(self):
        with pytest.raises(ValidationError):
            BookingCreate(**self._data(currency="US"))

    def test_script_tags_stripped(self):
        booking = BookingCreate(**self._data(
            customer_name="<script>alert(1)</script>Dana",
            notes='<img src=x onerror=alert(1)>',
        ))

        assert booking.customer_name == "Dana"
        assert "onerror=" not in booking.notes

    def test_maintenance_range(self):
        assert MaintenanceBlock(start_date=date(2030, 5, 1), end_date=date(2030, 5, 1))
        with pytest.raises(ValidationError):
            MaintenanceBlock(start_date=date(2030, 5, 2), end_date=date(2030, 5, 1))


class TestSettings:
    def test_short_secret_key_rejected(self):
        with pytest.raises(ValidationError):
            Settings(SECRET_KEY="too-short")

    def test_max_attempts_bounds(self):
        with pytest.raises(ValidationError):
            Settings(WEBHOOK_MAX_ATTEMPTS=0)
        assert Settings(WEBHOOK_MAX_ATTEMPTS=3).webhook_max_attempts == 3

    def test_postgres_url_normalized(self):
        s = Settings(DATABASE_URL="postgres://user:pw@db:5432/bookings")
        assert s.sqlalchemy_database_url == "postgresql://user:pw@db:5432/bookings"

    def test_cors_origins_parsed(self):
        s = Settings(ALLOWED_ORIGINS="https://admin.example.com/, https://admin.example.com,,http://localhost:3000")
        assert s.cors_origins == ["https://admin.example.com", "http://localhost:3000"]

    def test_paypal_api_base(self):
        assert "sandbox" in Settings(PAYPAL_MODE="sandbox").paypal_api_base
        assert Settings(PAYPAL_MODE="live").paypal_api_base == "https://api-m.paypal.com"
