"""
Example: Basic SAP Gateway usage with sap_gw
============================================

This example shows writes, $batch and session inspection against a
SAP Gateway OData service.
"""

import asyncio

from sap_gw import (
    BatchOperation,
    BatchOperationType,
    ConnectionContext,
    ODataUpstreamError,
)
from sap_gw.gateway import format_messages


async def example_writes():
    """Create, update and delete a sales order."""

    # Reads from environment variables: S4_BASE_URL, S4_USER, S4_PASS, S4_SAP_CLIENT
    with ConnectionContext() as conn:
        orders = conn.get_service("API_SALES_ORDER_SRV")

        created = await orders.create("A_SalesOrder", {
            "SalesOrderType": "OR",
            "SalesOrganization": "1710",
            "SoldToParty": "17100001",
        })
        order_id = created.get("SalesOrder")
        print(f"Created order {order_id}")

        await orders.update("A_SalesOrder", order_id, {"PurchaseOrderByCustomer": "PO-42"})

        try:
            await orders.delete("A_SalesOrder", order_id)
        except ODataUpstreamError as exc:
            print(f"Delete failed ({exc.status}):")
            print(format_messages(exc.messages))

        status = conn.sessions.get_session_status(orders.host, orders.service_path)
        print(f"Session: {status.state.value}, {status.cookie_count} cookie(s)")


async def example_batch():
    """Send several changes in one $batch changeset."""
    with ConnectionContext() as conn:
        partners = conn.get_service("API_BUSINESS_PARTNER")

        response = await partners.execute_batch([
            BatchOperation(BatchOperationType.UPDATE, "A_BusinessPartner", entity_key="'1000001'",
                           data={"SearchTerm1": "ACME"}),
            BatchOperation(BatchOperationType.UPDATE, "A_BusinessPartner", entity_key="'1000002'",
                           data={"SearchTerm1": "GLOBEX"}),
        ])

        for result in response.results:
            print(result.status_code, result.error or "ok")
        for warning in response.warnings:
            print("Warning:", warning)


if __name__ == "__main__":
    # Uncomment the example you want to run
    # asyncio.run(example_writes())
    # asyncio.run(example_batch())

    print("Set up your environment variables and uncomment an example to run.")
    print("Required: S4_BASE_URL, S4_USER, S4_PASS (or S4_BEARER_TOKEN)")
