from django.test import TestCase

from accounts.directory import DirectoryLookupError, ExpertTier, get_expert_tier, get_organization_for_user, tier_for_role
from accounts.models import CustomUser, Organization, OrganizationMembership


class DirectoryTests(TestCase):
    def test_tier_for_role(self):
        self.assertEqual(tier_for_role("expert_community"), ExpertTier.COMMUNITY)
        self.assertEqual(tier_for_role("expert_top"), ExpertTier.TOP)
        self.assertEqual(tier_for_role("expert_lecturer"), ExpertTier.TOP)

    def test_expert_tier_lookup(self):
        expert = CustomUser.objects.create_user(email="Top@Example.com", password="x", role="expert_top")
        self.assertEqual(expert.email, "top@example.com")
        self.assertEqual(get_expert_tier(expert.pk), ExpertTier.TOP)

    def test_non_expert_and_missing_user(self):
        client = CustomUser.objects.create_user(email="client@example.com", password="x")
        with self.assertRaises(DirectoryLookupError):
            get_expert_tier(client.pk)
        with self.assertRaises(DirectoryLookupError):
            get_expert_tier(999999)

    def test_owner_membership_wins(self):
        user = CustomUser.objects.create_user(email="e@example.com", password="x", role="expert_community")
        team = Organization.objects.create(name="Team", org_type="team")
        own = Organization.objects.create(name="Own practice")
        OrganizationMembership.objects.create(user=user, organization=team, role="member")
        OrganizationMembership.objects.create(user=user, organization=own, role="owner")
        self.assertEqual(get_organization_for_user(user.pk), own.pk)

    def test_user_without_organization(self):
        user = CustomUser.objects.create_user(email="solo@example.com", password="x", role="expert_community")
        with self.assertRaises(DirectoryLookupError):
            get_organization_for_user(user.pk)
