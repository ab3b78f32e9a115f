from django.contrib import admin, messages

from apps.raffle.exceptions import RaffleError
from .models import PaymentCredit
from .services import CreditLedger


@admin.action(description='Refund selected credits')
def refund_credits_action(modeladmin, request, queryset):
    refunded = 0
    for credit in queryset:
        try:
            CreditLedger.refund_credit(credit.id, actor=request.user)
            refunded += 1
        except RaffleError as e:
            modeladmin.message_user(request, f'{credit.customer_name}: {e}', level=messages.WARNING)

    if refunded:
        modeladmin.message_user(request, f'Refunded {refunded} credit(s)', level=messages.SUCCESS)


@admin.action(description='Confirm selected pending credits')
def confirm_credits_action(modeladmin, request, queryset):
    confirmed = 0
    for credit in queryset.filter(status=PaymentCredit.PENDING):
        try:
            CreditLedger.confirm_credit(credit.id)
            confirmed += 1
        except RaffleError as e:
            modeladmin.message_user(request, f'{credit.customer_name}: {e}', level=messages.WARNING)

    modeladmin.message_user(request, f'Confirmed {confirmed} credit(s)', level=messages.SUCCESS)


@admin.register(PaymentCredit)
class PaymentCreditAdmin(admin.ModelAdmin):
    list_display = ('customer_name', 'event', 'payment_method', 'amount', 'status', 'expires_at', 'is_expired', 'created_at')
    list_filter = ('status', 'payment_method', 'event', 'created_at')
    search_fields = ('customer_name', 'customer_email', 'customer_phone', 'payment_reference')
    readonly_fields = ('id', 'event', 'payment_reference', 'payment_method', 'amount', 'status', 'expires_at', 'created_at', 'updated_at')
    ordering = ('-created_at',)
    actions = [confirm_credits_action, refund_credits_action]

    def is_expired(self, obj):
        return obj.is_expired()
    is_expired.boolean = True
    is_expired.short_description = 'Expired'

    def has_add_permission(self, request):
        return False
