"""
Order Sync Errors
=================

Domain exceptions raised by the order synchronization pipeline.

WHY THIS FILE EXISTS
--------------------
Each stage of the pipeline fails in its own way, and the batch runner needs
to tell them apart:
- A malformed payload skips one order (counted as an error)
- A SKU that cannot be resolved degrades one line, not the order
- An external call that fails is retryable and never rolls back the order

Outcomes that are not failures (duplicate order, insufficient stock) are
returned as values by the services, not raised.

RELATED FILES
-------------
- ordersync/services/payloads.py: Raises ValidationError
- ordersync/services/line_resolver.py: Raises ProductResolutionError
- ordersync/services/carrier_selection.py: Raises ExternalCallError
- ordersync/services/sendcloud_client.py: Raises SendCloudAPIError (an ExternalCallError)
- ordersync/services/order_sync_service.py: Catches all of the above
"""

from typing import Optional


class OrderSyncError(Exception):
    """
    Base exception for all order sync errors.

    Allows catching every pipeline error with a single except clause
    while still being able to handle specific error types.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderSyncError):
    """
    Raised when an inbound order payload cannot be decoded.

    Covers payloads missing both an id and an order number, payloads that
    are not JSON objects, and field values of the wrong type. The order is
    skipped and counted as an error; the batch continues.
    """

    def __init__(self, message: str, order_number: Optional[str] = None):
        super().__init__(message)
        self.order_number = order_number


class BatchPayloadError(OrderSyncError):
    """Raised when the batch itself cannot be parsed (not a list, or empty)."""


class ProductResolutionError(OrderSyncError):
    """
    Raised when a SKU can neither be found nor created.

    The line is persisted without a product and the order status becomes
    products_not_found so the order stays visible for manual remediation.
    """

    def __init__(self, message: str, sku: Optional[str] = None):
        super().__init__(message)
        self.sku = sku


class ExternalCallError(OrderSyncError):
    """
    Raised when a call to an external collaborator fails.

    Timeouts, transport errors and non-2xx responses from carrier selection
    end up here; the shipping platform raises the SendCloudAPIError
    subclass (order pulls, tracking and product enrichment lookups).
    Retried by the arq jobs, never fatal to an order already persisted.
    """

    def __init__(self, message: str, service: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class AttributionWarning(UserWarning):
    """
    No sender rule, mapping default or tenant default applied to an order.

    Recorded on the order and in the batch result, never raised through
    the pipeline.
    """
