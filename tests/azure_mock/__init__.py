"""Azure authorization mock for integration testing.

Provides an in-memory implementation of the AuthorizationClient protocol
so the reconcilers and commands can be tested without Azure connectivity.

Key Features:
- In-memory directory, role definitions, assignments and locks
- Read-after-write lag for assignment verification scenarios
- Error injection per method for failure scenarios
- Managed identity credential simulation

Usage:
    from azure_mock import MockAuthorizationClient

    client = MockAuthorizationClient()
    user = client.add_user("alice@contoso.com")
    client.add_resource(f"{SERVICE_SCOPE}/apis/orders")

    provisioner = Provisioner(client, config, sleep=lambda _: None)
    provisioner.provision_api_roles(...)

    assert client.assignments_for(user.id)
"""

from .authorization import (
    RESOURCE_GROUP,
    SERVICE_NAME,
    SERVICE_SCOPE,
    SUBSCRIPTION_ID,
    MockAuthorizationClient,
)
from .credential import MockManagedIdentityCredential, create_mock_credential

__all__ = [
    "RESOURCE_GROUP",
    "SERVICE_NAME",
    "SERVICE_SCOPE",
    "SUBSCRIPTION_ID",
    "MockAuthorizationClient",
    "MockManagedIdentityCredential",
    "create_mock_credential",
]
