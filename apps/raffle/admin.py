from django.contrib import admin, messages

from .exceptions import RaffleError
from .models import Event, Square, SquarePurchase, TimelineEntry
from .services import EventService


@admin.action(description='Open selected events for sale')
def open_selling_action(modeladmin, request, queryset):
    """
    Admin action to move draft events to SELLING
    """
    opened = 0
    for event in queryset:
        try:
            EventService.transition(event.id, Event.SELLING, actor=request.user)
            opened += 1
        except RaffleError as e:
            modeladmin.message_user(request, f'{event.name}: {e}', level=messages.WARNING)

    if opened:
        modeladmin.message_user(request, f'Opened {opened} event(s) for sale', level=messages.SUCCESS)


class SquareInline(admin.TabularInline):
    model = Square
    fields = ('square_number', 'position', 'status', 'owner_id', 'selected_at')
    readonly_fields = fields
    extra = 0
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ('name', 'status', 'square_price', 'grid_cols', 'grid_rows', 'winner_square', 'created_at')
    list_filter = ('status', 'created_at')
    search_fields = ('name',)
    readonly_fields = ('id', 'status', 'winner_square', 'grid_cols', 'grid_rows', 'created_at', 'updated_at')
    ordering = ('-created_at',)
    actions = [open_selling_action]
    inlines = [SquareInline]

    fieldsets = (
        (None, {
            'fields': ('id', 'name', 'description', 'status')
        }),
        ('Grid', {
            'fields': ('grid_cols', 'grid_rows', 'square_price')
        }),
        ('Result', {
            'fields': ('winner_square',)
        }),
        ('Dates', {
            'fields': ('created_at', 'updated_at')
        }),
    )

    def has_add_permission(self, request):
        # Events need their square grid, create them through the API or
        # the create_demo_event command.
        return False


@admin.register(Square)
class SquareAdmin(admin.ModelAdmin):
    list_display = ('square_number', 'position', 'event', 'status', 'owner_id', 'selected_at')
    list_filter = ('status', 'event')
    search_fields = ('position', 'owner_id')
    readonly_fields = ('event', 'grid_x', 'grid_y', 'square_number', 'position', 'status', 'owner_id', 'selected_at')
    ordering = ('event', 'square_number')

    def has_add_permission(self, request):
        return False


@admin.register(SquarePurchase)
class SquarePurchaseAdmin(admin.ModelAdmin):
    list_display = ('confirmation_code', 'square', 'customer_full_name', 'customer_initials', 'created_at')
    search_fields = ('confirmation_code', 'customer_full_name')
    readonly_fields = ('square', 'credit', 'confirmation_code', 'customer_initials', 'customer_full_name', 'created_at')
    ordering = ('-created_at',)

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(TimelineEntry)
class TimelineEntryAdmin(admin.ModelAdmin):
    list_display = ('event', 'entry_type', 'actor', 'created_at')
    list_filter = ('entry_type', 'created_at')
    readonly_fields = ('event', 'entry_type', 'details', 'actor', 'created_at')
    ordering = ('-created_at',)

    def has_add_permission(self, request):
        return False
