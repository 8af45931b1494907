from django.contrib import admin
from django.urls import path

urlpatterns = [
    path("admin/", admin.site.urls),
]


# admin customisation
admin.site.site_header = "Order Tracking"
admin.site.site_title = "Order Tracking"
admin.site.index_title = "Order Tracking Portal"
