from django.urls import path
from . import views

app_name = 'conversations'

urlpatterns = [
    path('', views.ConversationListView.as_view(), name='conversation-list'),
    path('create/', views.ConversationCreateView.as_view(), name='conversation-create'),
    path('unread/', views.UnreadSummaryView.as_view(), name='conversation-unread'),
    path('<str:conversation_id>/', views.ConversationDetailView.as_view(), name='conversation-detail'),
    path('<str:conversation_id>/messages/', views.ConversationMessagesView.as_view(), name='conversation-messages'),
    path('<str:conversation_id>/read/', views.MarkMessagesAsReadView.as_view(), name='conversation-read'),
    path('<str:conversation_id>/accept/', views.ConversationTransitionView.as_view(event='accept'), name='conversation-accept'),
    path('<str:conversation_id>/reject/', views.ConversationTransitionView.as_view(event='reject'), name='conversation-reject'),
    path('<str:conversation_id>/complete/', views.ConversationTransitionView.as_view(event='complete'), name='conversation-complete'),
    path('<str:conversation_id>/cancel/', views.ConversationTransitionView.as_view(event='cancel'), name='conversation-cancel'),
]
