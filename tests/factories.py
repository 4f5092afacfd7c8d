"""Metric snapshots shared by the service and API tests."""

ELIGIBLE_METRICS = [
    {"variant_name": "control", "sample_size": 2000, "success_rate": 0.20, "error_rate": 0.01},
    {"variant_name": "variant_a", "sample_size": 2000, "success_rate": 0.26, "error_rate": 0.01},
    {"variant_name": "variant_b", "sample_size": 2000, "success_rate": 0.21, "error_rate": 0.02},
]

# variant_a leads by 2.5%: not significant and under the default 5% minimum
INELIGIBLE_METRICS = [
    {"variant_name": "control", "sample_size": 2000, "success_rate": 0.20, "error_rate": 0.01},
    {"variant_name": "variant_a", "sample_size": 2000, "success_rate": 0.205, "error_rate": 0.01},
    {"variant_name": "variant_b", "sample_size": 2000, "success_rate": 0.19, "error_rate": 0.02},
]
