from django.urls import path
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from . import views
from .serializers import BloodLinkTokenObtainPairSerializer

app_name = 'accounts'

urlpatterns = [
    path('register/', views.register, name='register'),
    path('login/', views.login, name='login'),
    path('me/', views.me, name='me'),

    # ========================================
    # JWT TOKEN MANAGEMENT
    # ========================================
    path('token/', TokenObtainPairView.as_view(serializer_class=BloodLinkTokenObtainPairSerializer), name='token_obtain_pair'),
    path('token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
]
