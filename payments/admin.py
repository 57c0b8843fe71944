from django.contrib import admin
from django.utils.html import format_html
from .models import Coupon, PendingCheckout, Purchase


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    list_display = ('code', 'discount_type', 'discount_value', 'active', 'valid_to', 'usage_display')
    list_filter = ('active', 'discount_type')
    search_fields = ('code',)
    filter_horizontal = ('specific_products',)

    def usage_display(self, obj):
        used = obj.purchases.count()
        if obj.usage_limit is None:
            return f"{used} / ∞"
        return f"{used} / {obj.usage_limit}"
    usage_display.short_description = 'Usage'


@admin.register(PendingCheckout)
class PendingCheckoutAdmin(admin.ModelAdmin):
    list_display = ('token', 'email', 'product', 'final_amount', 'currency', 'status_badge', 'created_at', 'expires_at')
    list_filter = ('status', 'currency', 'created_at')
    search_fields = ('email', 'stripe_payment_intent_id', 'token')
    readonly_fields = [f.name for f in PendingCheckout._meta.fields]

    def status_badge(self, obj):
        colors = {
            PendingCheckout.STATUS_RECORD_PERSISTED: 'green',
            PendingCheckout.STATUS_FAILED: 'red',
            PendingCheckout.STATUS_EXPIRED: 'gray',
        }
        return format_html('<span style="color: {};">{}</span>', colors.get(obj.status, 'orange'), obj.get_status_display())
    status_badge.short_description = 'Status'

    def has_add_permission(self, request):
        return False


@admin.register(Purchase)
class PurchaseAdmin(admin.ModelAdmin):
    list_display = ('id', 'customer', 'product', 'final_amount', 'currency', 'coupon_code', 'is_free', 'was_new_customer', 'created_at')
    list_filter = ('is_free', 'was_new_customer', 'currency', 'created_at')
    search_fields = ('transaction_id', 'customer__email', 'coupon_code')
    date_hierarchy = 'created_at'
    readonly_fields = [f.name for f in Purchase._meta.fields]

    # Purchases are append-only order history.
    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
