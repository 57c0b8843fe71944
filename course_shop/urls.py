"""
URL configuration for course_shop project.
"""
from django.contrib import admin
from django.urls import path, include


urlpatterns = [
    path('admin/', admin.site.urls),
    path('checkout/', include('payments.urls', namespace='payments')),
]
