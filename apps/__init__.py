from apps import api

from apps.api import Services, build_services, create_app, register_plugin

__all__ = ['Services', 'api', 'build_services', 'create_app', 'register_plugin']
