from django.urls import path

from .views import (
    CreditConfirmView,
    CreditCreateView,
    CreditDetailView,
    CreditRefundView,
    EventCreditsView,
)

app_name = 'payments'

urlpatterns = [
    path('credits/', CreditCreateView.as_view(), name='credit-create'),
    path('credits/<uuid:credit_id>/', CreditDetailView.as_view(), name='credit-detail'),
    path('credits/<uuid:credit_id>/confirm/', CreditConfirmView.as_view(), name='credit-confirm'),
    path('credits/<uuid:credit_id>/refund/', CreditRefundView.as_view(), name='credit-refund'),
    path('events/<uuid:event_id>/credits/', EventCreditsView.as_view(), name='event-credits'),
]
