from django.urls import path

from . import views

urlpatterns = [
    path('batches/', views.batch_list, name='batch_list'),
    path('batches/<str:job_id>/', views.batch_detail, name='batch_detail'),
    path('students/<str:reg_no>/history/', views.student_history, name='student_history'),
]
