from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User, Entitlement

# --- INLINES ---

class EntitlementInline(admin.TabularInline):
    model = Entitlement
    extra = 0
    fields = ('product', 'granted_at')
    readonly_fields = ('granted_at',)

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('product')

# --- MODEL ADMINS ---

@admin.register(User)
class UserAdmin(BaseUserAdmin):
    inlines = [EntitlementInline]
    list_display = ('email', 'first_name', 'last_name', 'subscription_tier', 'requires_profile_completion', 'date_joined')
    list_filter = ('subscription_tier', 'requires_profile_completion', 'is_staff', 'is_active')
    search_fields = ('email', 'first_name', 'last_name', 'stripe_customer_id')
    ordering = ('-date_joined',)
    fieldsets = BaseUserAdmin.fieldsets + (
        ('Membership', {'fields': ('subscription_tier', 'requires_profile_completion', 'phone', 'country', 'stripe_customer_id')}),
    )

@admin.register(Entitlement)
class EntitlementAdmin(admin.ModelAdmin):
    list_display = ('user', 'product', 'granted_at')
    list_filter = ('product',)
    search_fields = ('user__email', 'product__name')
