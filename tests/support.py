from __future__ import annotations

import os

os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('COMPLETION_POLL_DELAY_MS', '0')
os.environ.setdefault('LOG_LEVEL', 'WARNING')

import unittest
from datetime import date
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gearflow.auth import Principal, Role
from gearflow.models import (
    Base,
    Car,
    CarAssignment,
    CarBooking,
    CarBookingStatus,
    Gear,
    GearStatus,
    Profile,
    ProfileRole,
    ProfileStatus,
)
from gearflow.security.passwords import hash_password


PASSWORD = 'correct-horse-battery'
PASSWORD_HASH = hash_password(PASSWORD)


def make_session_factory():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class DatabaseTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def add_profile(
        self,
        email: str,
        *,
        role: ProfileRole = ProfileRole.USER,
        status: ProfileStatus = ProfileStatus.ACTIVE,
        full_name: str | None = None,
        preferences: dict | None = None,
    ) -> Profile:
        profile = Profile(
            email=email,
            password_hash=PASSWORD_HASH,
            full_name=full_name or email.split('@')[0].title(),
            role=role,
            status=status,
            notification_preferences=preferences or {},
        )
        self.db.add(profile)
        self.db.commit()
        return profile

    def add_gear(
        self,
        name: str,
        *,
        quantity: int = 1,
        available: int | None = None,
        status: GearStatus = GearStatus.AVAILABLE,
        checked_out_to: int | None = None,
    ) -> Gear:
        gear = Gear(
            name=name,
            category='Camera',
            quantity=quantity,
            available_quantity=quantity if available is None else available,
            status=status,
            checked_out_to=checked_out_to,
        )
        self.db.add(gear)
        self.db.commit()
        return gear

    def add_car_booking(
        self,
        requester: Profile,
        *,
        status: CarBookingStatus = CarBookingStatus.PENDING,
        with_car: bool = False,
    ) -> CarBooking:
        booking = CarBooking(
            requester_id=requester.id,
            employee_name=requester.full_name,
            date_of_use=date(2026, 11, 2),
            time_slot='09:00-12:00',
            status=status,
        )
        self.db.add(booking)
        self.db.flush()
        if with_car:
            car = Car(label='Hilux', plate='ABC-123', active=True)
            self.db.add(car)
            self.db.flush()
            self.db.add(CarAssignment(booking_id=booking.id, car_id=car.id))
        self.db.commit()
        return booking

    @staticmethod
    def principal_for(profile: Profile) -> Principal:
        return Principal(
            id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
            role=Role(profile.role.value),
            active=profile.status == ProfileStatus.ACTIVE,
        )

    def reload(self, obj):
        self.db.expire_all()
        return self.db.get(type(obj), obj.id)


class ApiTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        from fastapi.testclient import TestClient

        from gearflow.db import get_db
        from gearflow.main import app

        def _get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

        patcher = patch('gearflow.services.email_service.send_email', return_value={'id': 'email-test'})
        self.send_email = patcher.start()
        self.addCleanup(patcher.stop)

    def auth_headers(self, profile: Profile) -> dict[str, str]:
        from gearflow.security.sessions import create_web_session

        token = create_web_session(self.db, profile.id, ip='127.0.0.1', user_agent='tests')
        self.db.commit()
        return {'Authorization': f'Bearer {token}'}
