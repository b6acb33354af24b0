"""
Built-in feature catalogue.

Every gated capability is listed here as a (category, feature_key) pair.
Quota windows are explicit per feature: daily allowances for search style
features, 30 days for monthly allowances.
"""

from datetime import timedelta

from .models import FeatureCategory, FeatureRule, Tier

CATALOG_VERSION = "2024.06"

DAY = timedelta(days=1)
MONTH = timedelta(days=30)


FEATURE_CATALOG = (
    # Job search runs on paid search APIs; it unlocks for everyone once the
    # community reaches the subscriber target.
    FeatureRule(
        category=FeatureCategory.JOBS,
        feature_key="search",
        title="Job search",
        community_gated=True,
        quota_limit=10,
        quota_window=DAY,
        quota_limits_by_tier={Tier.BASIC: 25, Tier.PREMIUM: 100},
    ),
    FeatureRule(
        category=FeatureCategory.JOBS,
        feature_key="advancedFiltering",
        title="Advanced job filtering",
        community_gated=True,
    ),
    FeatureRule(
        category=FeatureCategory.JOBS,
        feature_key="realTimeAlerts",
        title="Real-time job alerts",
        community_gated=True,
    ),
    FeatureRule(
        category=FeatureCategory.JOBS,
        feature_key="aiMatching",
        title="AI job matching",
        community_gated=True,
        quota_limit=5,
        quota_window=DAY,
        quota_limits_by_tier={Tier.PREMIUM: 50},
    ),
    FeatureRule(
        category=FeatureCategory.JOBS,
        feature_key="jobPosting",
        title="Employer job posting",
        min_tier=Tier.BASIC,
    ),
    FeatureRule(
        category=FeatureCategory.APPLICATIONS,
        feature_key="jobApplications",
        title="Job applications",
        min_tier=Tier.BASIC,
    ),
    FeatureRule(
        category=FeatureCategory.APPLICATIONS,
        feature_key="autoApply",
        title="Auto apply",
        min_tier=Tier.PREMIUM,
    ),
    FeatureRule(
        category=FeatureCategory.APPLICATIONS,
        feature_key="applicationTracking",
        title="Application tracking",
        min_tier=Tier.PREMIUM,
    ),
    FeatureRule(
        category=FeatureCategory.APPLICATIONS,
        feature_key="workerPlacement",
        title="Worker placement",
    ),
    FeatureRule(
        category=FeatureCategory.CV,
        feature_key="cvUpload",
        title="CV upload",
    ),
    FeatureRule(
        category=FeatureCategory.CV,
        feature_key="cvAnalysis",
        title="CV analysis",
        quota_limit=3,
        quota_window=MONTH,
        quota_limits_by_tier={Tier.BASIC: None, Tier.PREMIUM: None},
    ),
    FeatureRule(
        category=FeatureCategory.CV,
        feature_key="advancedCvAnalysis",
        title="Advanced CV analysis",
        min_tier=Tier.PREMIUM,
    ),
    FeatureRule(
        category=FeatureCategory.CAREER,
        feature_key="careerAdvice",
        title="Career advice chat",
    ),
    FeatureRule(
        category=FeatureCategory.CAREER,
        feature_key="careerConsultations",
        title="Career consultations",
        quota_limit=1,
        quota_window=MONTH,
        quota_limits_by_tier={Tier.PREMIUM: None},
    ),
    FeatureRule(
        category=FeatureCategory.CAREER,
        feature_key="interviewPrep",
        title="Interview prep tools",
        min_tier=Tier.PREMIUM,
    ),
    FeatureRule(
        category=FeatureCategory.INSIGHTS,
        feature_key="salaryInsights",
        title="Salary insights",
        min_tier=Tier.PREMIUM,
    ),
    FeatureRule(
        category=FeatureCategory.INSIGHTS,
        feature_key="companyInsights",
        title="Company insights",
        min_tier=Tier.PREMIUM,
    ),
    FeatureRule(
        category=FeatureCategory.INSIGHTS,
        feature_key="adFree",
        title="Ad-free experience",
        min_tier=Tier.PREMIUM,
    ),
)
