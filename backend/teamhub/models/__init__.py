# Import models here so Alembic can discover metadata.
from teamhub.models.user import User  # noqa: F401

# Tenant hierarchy: organizations own businesses; businesses scope memberships + invitations
from teamhub.models.organization import Organization  # noqa: F401
from teamhub.models.business import Business  # noqa: F401
from teamhub.models.membership import Membership  # noqa: F401
from teamhub.models.invitation import Invitation  # noqa: F401
