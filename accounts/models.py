import uuid

from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin
from django.db import models
from django.utils import timezone
from .managers import CustomUserManager


class CustomUser(AbstractBaseUser, PermissionsMixin):
    ROLE_CHOICES = [
        ('guest', 'Guest'),
        ('expert_community', 'Community Expert'),
        ('expert_top', 'Top Expert'),
        ('expert_lecturer', 'Lecturer'),
        ('admin', 'Admin'),
    ]
    EXPERT_ROLES = ('expert_community', 'expert_top', 'expert_lecturer')

    email = models.EmailField("email address", unique=True)
    first_name = models.CharField(max_length=150, blank=True)
    last_name = models.CharField(max_length=150, blank=True)
    role = models.CharField(max_length=32, choices=ROLE_CHOICES, default='guest')
    stripe_customer_id = models.CharField(max_length=255, blank=True, null=True, unique=True)
    is_staff = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    date_joined = models.DateTimeField(default=timezone.now)

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = []

    objects = CustomUserManager()

    class Meta:
        verbose_name = "User"
        verbose_name_plural = "Users"

    def save(self, *args, **kwargs):
        """Override save to ensure email is always stored in lowercase"""
        if self.email:
            self.email = self.email.lower().strip()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.email

    @property
    def is_expert(self):
        return self.role in self.EXPERT_ROLES

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()


class Organization(models.Model):
    """
    Subscriptions are owned by organizations, not users.
    Solo experts get a personal organization; teams share one.
    """
    ORG_TYPES = [
        ('expert_individual', 'Individual Expert'),
        ('team', 'Team'),
        ('patient_personal', 'Personal'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    org_type = models.CharField(max_length=32, choices=ORG_TYPES, default='expert_individual')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Organization"
        verbose_name_plural = "Organizations"
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.org_type})"


class OrganizationMembership(models.Model):
    ROLE_CHOICES = [
        ('owner', 'Owner'),
        ('admin', 'Admin'),
        ('member', 'Member'),
    ]

    user = models.ForeignKey("accounts.CustomUser", on_delete=models.CASCADE, related_name="memberships")
    organization = models.ForeignKey("accounts.Organization", on_delete=models.CASCADE, related_name="memberships")
    role = models.CharField(max_length=16, choices=ROLE_CHOICES, default='owner')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at']
        unique_together = ['user', 'organization']

    def __str__(self):
        return f"{self.user} in {self.organization} ({self.role})"
