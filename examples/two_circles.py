import jax
import jax.numpy as jnp
import matplotlib.pyplot as plt
import numpy as np

from jacobax import NewtonKrylovSolver, get_linear_solver

if __name__ == "__main__":
    jax.config.update("jax_enable_x64", True)

    # Intersection of x^2 + y^2 = 2 and exp(x - 1) + y^2 = 2
    def F(u):
        x, y = u[0], u[1]
        return jnp.array([x ** 2 + y ** 2 - 2, jnp.exp(x - 1) + y ** 2 - 2])

    starts = [(2.0, 0.5), (2.5, 3.0), (-1.0, 1.5), (-0.5, -2.0)]

    fig, ax = plt.subplots(figsize=(6, 6))
    xs, ys = np.meshgrid(np.linspace(-2.5, 3.0, 300), np.linspace(-3.0, 3.5, 300))
    ax.contour(xs, ys, xs ** 2 + ys ** 2 - 2, levels=[0], colors='C0')
    ax.contour(xs, ys, np.exp(xs - 1) + ys ** 2 - 2, levels=[0], colors='C1')

    for backend in ['gmres', 'dense']:
        print(f"--- Linear solver: {backend} ---")
        solver = NewtonKrylovSolver(linear_solver=get_linear_solver(backend))

        for start in starts:
            path = []
            result = solver.solve(F, jnp.array(start), callback=path.append)
            print(f"   from {start}: {result.status.name:>17} after {result.num_steps} steps "
                  f"-> ({float(result.value[0]):+.6f}, {float(result.value[1]):+.6f})")

            if backend == 'gmres':
                path = np.array(path)
                ax.plot(path[:, 0], path[:, 1], 'k.-', lw=0.8)
                ax.plot(*path[-1], 'r*', ms=12)

    ax.set_xlabel("x")
    ax.set_ylabel("y")
    ax.set_title("Newton paths")
    ax.set_aspect('equal')
    plt.show()
