from django.urls import path
from .views import (
    CancelOrderView,
    DelayedOrdersView,
    OrdersCollectionView,
    OrderStatsView,
    PendingPaymentsView,
    ProcessRefundView,
    RetrieveOrderView,
    SubmitRefundView,
    UpdateStatusView,
)
app_name = "orders"

urlpatterns = [
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("pending-payments/", PendingPaymentsView.as_view(), name="orders-pending-payments"),
    path("delayed/", DelayedOrdersView.as_view(), name="orders-delayed"),
    path("stats/", OrderStatsView.as_view(), name="orders-stats"),
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("<uuid:oid>/status/", UpdateStatusView.as_view(), name="orders-status"),
    path("<uuid:oid>/refund/", ProcessRefundView.as_view(), name="orders-refund"),
    path("<uuid:oid>/refund/submit/", SubmitRefundView.as_view(), name="orders-refund-submit"),
]
