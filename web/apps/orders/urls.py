from django.urls import path

from .views import (
    CheckoutSubmitView,
    MercadoPagoWebhookView,
    OrdersCollectionView,
    OrdersPingView,
    OrderStatusView,
    RetrieveOrderView,
)

app_name = "orders"

urlpatterns = [
    path("checkout/", CheckoutSubmitView.as_view(), name="checkout-submit"),
    path("webhooks/mercadopago/", MercadoPagoWebhookView.as_view(), name="webhook-mercadopago"),
    path("orders/ping/", OrdersPingView.as_view(), name="ping"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),
    path("orders/<str:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<str:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
]
