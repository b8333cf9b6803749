import pytest

from crm.models import Contact
from platformapp.models import Tenant


@pytest.fixture
def tenant(db):
    return Tenant.objects.create(slug="acme", name="Acme")


@pytest.fixture
def other_tenant(db):
    return Tenant.objects.create(slug="globex", name="Globex")


@pytest.fixture
def contact(tenant):
    return Contact.objects.create(
        tenant=tenant, first_name="ana", last_name="souza",
        email="ana@example.com", phone="5511987654321", tags=["lead"],
    )


class EnqueueRecorder:
    """Stands in for scheduler.enqueue; keeps every job instead of publishing."""

    def __init__(self):
        self.jobs = []

    def __call__(self, job_type, payload, delay_seconds=0, backend=None):
        self.jobs.append({"type": job_type, "data": payload, "delay": delay_seconds})
        return f"msg-{len(self.jobs)}"


@pytest.fixture
def enqueued():
    return EnqueueRecorder()
