"""
Feature Ranking Example
=======================
"""
import warnings

from temporal_factor_lab import (
    NonConvergenceWarning,
    prepare_data,
    rank_features,
    ranking_table,
    simulate_time_course,
    train,
)


def main(n_features=40, n_factors=3, top_n=5, seed=1, **kwargs):
    print("=" * 70)
    print(f"Running Feature Ranking Example (p={n_features}, K={n_factors})")
    print("=" * 70)

    sim = simulate_time_course(n_features=n_features, n_smooth=2, n_static=1, seed=seed)
    data = prepare_data(sim.Y, sim.sample_ids, sim.covariates, n_factors=n_factors,
                        feature_ids=sim.feature_ids)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NonConvergenceWarning)
        model = train(data, n_factors=n_factors, convergence_mode="fast", seed=seed)

    for k, label in enumerate(model.factor_labels):
        up = rank_features(model, k, "positive", top_n=top_n)
        down = rank_features(model, k, "negative", top_n=top_n)
        print(f"\n{label} (smoothness {model.smoothness[k]:.2f})")
        print(f"   up:   {', '.join(up) or '-'}")
        print(f"   down: {', '.join(down) or '-'}")

    table = ranking_table(model, top_n=top_n)

    print("\n" + "=" * 70)
    print("Feature ranking example complete!")
    print("=" * 70)

    return table


if __name__ == "__main__":
    main()
