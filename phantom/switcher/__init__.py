"""Link-quality monitoring, probing and transport mode decisions."""