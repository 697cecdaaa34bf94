"""Azure API mocks for integration testing.

In-memory stand-ins for the Azure DevOps, Microsoft Graph, Resource Graph,
Resource Manager and authorization clients, so the whole reconciliation
can run without Azure connectivity.

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        ctx.resource_graph.add_subscription(SUB_ID)
        reconciler = Reconciler.from_config(config)
        result = await reconciler.run()

        assert ctx.devops.created
"""

from .authorization import (
    BUILTIN_ROLES,
    MockAuthorizationClient,
    MockAuthorizationState,
)
from .context import MockAzureContext, mock_azure_context
from .credential import MockManagedIdentityCredential, create_mock_credential
from .devops import PROJECT_ID, PROJECT_NAME, MockConnection, MockServiceEndpointClient
from .graph import MockResourceGraphClient, create_mock_graph_client
from .msgraph import (
    MICROSOFT_GRAPH_APP_ID,
    MICROSOFT_GRAPH_APP_ROLES,
    MockDirectoryState,
    MockGraphServiceClient,
    odata_error,
)
from .resources import MockResourceClient, MockResourceGroupState

__all__ = [
    "BUILTIN_ROLES",
    "MICROSOFT_GRAPH_APP_ID",
    "MICROSOFT_GRAPH_APP_ROLES",
    "PROJECT_ID",
    "PROJECT_NAME",
    "MockAuthorizationClient",
    "MockAuthorizationState",
    "MockAzureContext",
    "MockConnection",
    "MockDirectoryState",
    "MockGraphServiceClient",
    "MockManagedIdentityCredential",
    "MockResourceClient",
    "MockResourceGraphClient",
    "MockResourceGroupState",
    "MockServiceEndpointClient",
    "create_mock_credential",
    "create_mock_graph_client",
    "mock_azure_context",
    "odata_error",
]
