from apps.api.main import Services, build_services, create_app, register_plugin

__all__ = ['Services', 'build_services', 'create_app', 'register_plugin']
