from django.urls import path
from .views import PaymentFailureView, PaymentWebhookView, StartPaymentView, VerifyPaymentView
app_name = "payments"

urlpatterns = [
    path("intent/", StartPaymentView.as_view(), name="payments-intent"),
    path("verify/", VerifyPaymentView.as_view(), name="payments-verify"),
    path("failure/", PaymentFailureView.as_view(), name="payments-failure"),
    path("webhook/", PaymentWebhookView.as_view(), name="payments-webhook"),
]
