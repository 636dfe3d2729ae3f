from todo_api.models.user import User
from todo_api.models.task import Task
from todo_api.models.notification import SentNotification

__all__ = ["User", "Task", "SentNotification"]
