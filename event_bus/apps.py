from django.apps import AppConfig


class EventBusConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'event_bus'
