"""
Course and live class records.

Users live in the platform's auth service; they are referenced here by their
external id string only.
"""

from __future__ import annotations

import secrets

from django.db import models


def generate_stream_key() -> str:
    return secrets.token_hex(16)


class Course(models.Model):
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    teacher_id = models.CharField(max_length=64, db_index=True)
    is_published = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return self.title

    def is_teacher(self, user_id: str) -> bool:
        return bool(user_id) and str(self.teacher_id) == str(user_id)


class Enrollment(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        CANCELLED = "cancelled", "Cancelled"
        COMPLETED = "completed", "Completed"

    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="enrollments")
    student_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["course", "student_id"], name="unique_enrollment_per_student"),
        ]

    def __str__(self) -> str:
        return f"{self.student_id} -> {self.course_id} ({self.status})"


class LiveClass(models.Model):
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="live_classes")
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    scheduled_date = models.DateTimeField()
    duration = models.PositiveIntegerField(help_text="Minutes")
    is_live = models.BooleanField(default=False)
    is_completed = models.BooleanField(default=False)
    stream_key = models.CharField(max_length=64, unique=True, default=generate_stream_key, editable=False)
    current_viewer_count = models.PositiveIntegerField(default=0)
    peak_viewer_count = models.PositiveIntegerField(default=0)
    started_at = models.DateTimeField(null=True, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["scheduled_date"]
        verbose_name_plural = "live classes"

    def __str__(self) -> str:
        return f"{self.title} ({self.course_id})"


class LiveClassChatMessage(models.Model):
    live_class = models.ForeignKey(LiveClass, on_delete=models.CASCADE, related_name="chat_messages")
    user_id = models.CharField(max_length=64)
    user_name = models.CharField(max_length=150, blank=True, default="")
    message = models.TextField()
    timestamp = models.DateTimeField()

    class Meta:
        ordering = ["timestamp", "id"]

    def __str__(self) -> str:
        return f"{self.user_name or self.user_id}: {self.message[:40]}"
