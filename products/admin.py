from django.contrib import admin
from .models import Product, ProductPrice

class ProductPriceInline(admin.TabularInline):
    model = ProductPrice
    extra = 0
    fields = ('region', 'currency', 'amount')

@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ('name', 'base_price', 'currency', 'entitlement_type', 'grants_tier', 'is_active', 'created_at')
    list_filter = ('entitlement_type', 'is_active', 'currency')
    search_fields = ('name', 'slug', 'description')
    prepopulated_fields = {'slug': ('name',)}
    inlines = [ProductPriceInline]
