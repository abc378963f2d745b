from iris_ann_bench.benchmark import main

main()
