import jax
import jax.numpy as jnp
import matplotlib.pyplot as plt

from jacobax import newton_krylov, root_find

if __name__ == "__main__":
    # 1. Config
    jax.config.update("jax_enable_x64", True)

    def f(x):
        return x ** 2 - 2

    # 2. Eager Newton-Krylov from a poor guess, recording every iterate
    print("1. Solving x^2 = 2 from x0 = 37 ...")
    iterates = []
    result = newton_krylov(f, 37.0, tol_rel=1e-14, callback=iterates.append)

    print(f"   Status:     {result.status.name}")
    print(f"   Steps:      {result.num_steps}")
    print(f"   Root:       {float(result.value):.15f}")
    print(f"   sqrt(2):    {2 ** 0.5:.15f}")

    # 3. Same problem, whole loop compiled with optimistix
    print("\n2. Jit-compiled root find ...")
    sol = root_find(f, jnp.array([37.0]))
    print(f"   Root:       {float(sol.value[0]):.15f} in {int(sol.stats['num_steps'])} steps")

    # 4. Plot
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(10, 4))

    ax1.plot([float(x) for x in iterates], 'o-')
    ax1.axhline(2 ** 0.5, color='k', ls='--', lw=0.8)
    ax1.set_xlabel("Newton step")
    ax1.set_ylabel("x")
    ax1.set_title("Iterates")

    ax2.semilogy(result.residual_history, 's-')
    ax2.set_xlabel("Newton step")
    ax2.set_ylabel("|F(x)|")
    ax2.set_title("Residual")

    plt.tight_layout()
    plt.show()
