"""
Built-in Scenarios

The standard acceptance suite for the API Management module:
- basic: Developer tier, no sub-resources
- full:  products, APIs with operations, secret named values
- vnet:  Premium tier with external VNet integration
"""

from .definition import ScenarioTemplate

PUBLISHER_NAME = "Test Publisher"
PUBLISHER_EMAIL = "test@example.com"


BUILTIN_SCENARIOS: dict[str, ScenarioTemplate] = {
    "basic": ScenarioTemplate(
        name="basic",
        description="Developer tier service with default settings",
        name_prefix="apim-test-",
        publisher_name=PUBLISHER_NAME,
        publisher_email=PUBLISHER_EMAIL,
        sku_name="Developer_1",
        tags={"Environment": "test", "Module": "api-management"},
    ),
    "full": ScenarioTemplate(
        name="full",
        description="Service with a product, an API and a secret named value",
        name_prefix="apim-full-test-",
        publisher_name=PUBLISHER_NAME,
        publisher_email=PUBLISHER_EMAIL,
        sku_name="Developer_1",
        products={
            "starter": {
                "display_name": "Starter Product",
                "description": "Basic API product for testing",
                "approval_required": False,
                "published": True,
                "subscription_required": True,
                "subscriptions_limit": 10,
            }
        },
        apis={
            "petstore": {
                "name": "petstore-api",
                "display_name": "Petstore API",
                "description": "Sample Petstore API",
                "path": "petstore",
                "protocols": ["https"],
                "service_url": "https://petstore.swagger.io/v2",
                "operations": {
                    "get-pets": {
                        "display_name": "Get Pets",
                        "method": "GET",
                        "url_template": "/pets",
                        "description": "Retrieve all pets",
                    }
                },
            }
        },
        named_values={
            "api-key": {
                "display_name": "API Key",
                "value": "test-api-key-123",
                "secret": True,
            }
        },
        tags={"Environment": "test", "Module": "api-management-full"},
    ),
    "vnet": ScenarioTemplate(
        name="vnet",
        description="Premium tier service with external VNet integration",
        name_prefix="apim-vnet-test-",
        publisher_name=PUBLISHER_NAME,
        publisher_email=PUBLISHER_EMAIL,
        sku_name="Premium_1",
        virtual_network_type="External",
        tags={"Environment": "test", "Module": "api-management-vnet"},
    ),
}


def get_scenario(name: str) -> ScenarioTemplate:
    """Look up a built-in scenario by name."""
    if name not in BUILTIN_SCENARIOS:
        raise KeyError(
            f"Unknown scenario: {name} (available: {', '.join(BUILTIN_SCENARIOS)})"
        )
    return BUILTIN_SCENARIOS[name]
