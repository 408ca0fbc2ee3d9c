from django.contrib import admin

from .models import Course, Enrollment, LiveClass, LiveClassChatMessage


@admin.register(Course)
class CourseAdmin(admin.ModelAdmin):
    list_display = ("id", "title", "teacher_id", "is_published", "created_at")
    search_fields = ("title", "teacher_id")


@admin.register(Enrollment)
class EnrollmentAdmin(admin.ModelAdmin):
    list_display = ("id", "course", "student_id", "status")
    list_filter = ("status",)
    search_fields = ("student_id",)


@admin.register(LiveClass)
class LiveClassAdmin(admin.ModelAdmin):
    list_display = ("id", "title", "course", "scheduled_date", "is_live", "is_completed", "peak_viewer_count")
    list_filter = ("is_live", "is_completed")
    readonly_fields = ("stream_key", "started_at", "ended_at")


@admin.register(LiveClassChatMessage)
class LiveClassChatMessageAdmin(admin.ModelAdmin):
    list_display = ("id", "live_class", "user_name", "timestamp")
    search_fields = ("message", "user_id")
