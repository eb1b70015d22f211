from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from billing.models import Profile

from .models import User


class BillingProfileInline(admin.StackedInline):
    """Read-only billing summary; balances change only through the credit ledger."""

    model = Profile
    can_delete = False
    extra = 0
    fields = (
        'role',
        'stripe_customer_id',
        'subscription_status',
        'subscription_tier',
        'subscription_credits_balance',
        'purchased_credits_balance',
    )
    readonly_fields = (
        'stripe_customer_id',
        'subscription_status',
        'subscription_tier',
        'subscription_credits_balance',
        'purchased_credits_balance',
    )


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    inlines = (BillingProfileInline,)
    list_display = ('username', 'email', 'is_staff', 'billing_tier', 'date_joined')
    list_filter = ('is_staff', 'is_active', 'billing_profile__subscription_status')
    search_fields = ('username', 'email', 'billing_profile__stripe_customer_id')
    ordering = ('-date_joined',)
    list_select_related = ('billing_profile',)

    @admin.display(description='Tier')
    def billing_tier(self, obj):
        profile = getattr(obj, 'billing_profile', None)
        return profile.subscription_tier if profile else '-'
