from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    path('products/<int:product_id>/', views.product_price, name='product_price'),
    path('validate-coupon/', views.validate_coupon, name='validate_coupon'),
    path('create-payment-intent/', views.create_payment_intent, name='create_payment_intent'),
    path('complete-purchase/', views.complete_purchase, name='complete_purchase'),
    path('webhook/', views.stripe_webhook, name='webhook'),
]
